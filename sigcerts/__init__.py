"""Keyless signing identities, certificate root pools and RFC 3161 timestamps."""

__version__ = "0.1.0"
__all__ = ["fulcio", "fulcioroots", "identity", "timestamp"]