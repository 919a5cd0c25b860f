"""
core/cookies.py -- Auth cookie names shared by the server and the client.

The __Secure- prefix makes browsers refuse the cookie unless it was set over
HTTPS with the Secure attribute.
"""

ACCESS_COOKIE = "__Secure-keyward.access"
REFRESH_COOKIE = "__Secure-keyward.refresh"
