"""Oracle-refereed turn-based encounters for narrative chat sessions."""

__version__ = "0.3.0"
