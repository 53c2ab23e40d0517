"""oauthgate - OAuth 2.1 authentication proxy core for protocol servers."""

__version__ = "0.1.0"
