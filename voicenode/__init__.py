"""voicenode: speech command endpoint that forwards recognised phrases to a broker."""

__version__ = "0.3.0"
