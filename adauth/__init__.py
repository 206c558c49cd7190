"""Active Directory authentication with a local htpasswd fallback."""

__version__ = "1.0.0"
