"""Request-gating security core: caller identification, rate limiting and CSRF."""

__version__ = "0.1.0"
