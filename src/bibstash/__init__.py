"""Bibstash: a static, file-based cache of OpenAlex records."""

__version__ = "0.3.0"
