"""HEP capture pieces: packet listeners, VoIP quality metrics and PostgreSQL partition SQL templates."""

__version__ = "0.1.0"