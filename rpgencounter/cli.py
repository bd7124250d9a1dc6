"""Command line entry point: serve the encounter API or apply the schema."""

from __future__ import annotations

import argparse
import logging

from rpgencounter.backend.config import load_settings

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = load_settings()
    parser = argparse.ArgumentParser(
        prog="rpgencounter",
        description="Oracle-refereed encounter engine",
    )
    parser.add_argument("--log-level", default=settings.log_level, help=f"(default: {settings.log_level})")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="run the HTTP/WebSocket API")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)
    serve.add_argument("--reload", action="store_true", help="restart on code changes")

    subparsers.add_parser("migrate", help="apply db_schema.sql to RPGENCOUNTER_DATABASE_URL")

    parser.set_defaults(command="serve", host=settings.host, port=settings.port, reload=False)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "migrate":
        from rpgencounter.backend import migrate

        migrate.main()
        return

    import uvicorn

    logger.info("Serving encounter API on http://%s:%s", args.host, args.port)
    uvicorn.run(
        "rpgencounter.backend.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
