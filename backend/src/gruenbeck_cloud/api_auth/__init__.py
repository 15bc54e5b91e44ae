"""
Authentication for the Grünbeck cloud.

Provides the PKCE challenge generator, page scraping and the B2C
authorization flow.
"""

__all__: list[str] = []
