"""In-process request protection: rate limiting, CSRF tokens and security middleware.

State lives in process memory and is swept by background tasks started in
``miorah.main``; nothing here is shared between workers.
"""
