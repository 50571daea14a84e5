"""WebSocket authentication middleware for JWT access tokens."""

import logging
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.settings import api_settings
from rest_framework_simplejwt.tokens import AccessToken

User = get_user_model()
logger = logging.getLogger(__name__)

# Values stored in scope["auth_error"]
TOKEN_REQUIRED = "token_required"
TOKEN_INVALID = "token_invalid"


def _strip_bearer(token: str) -> str:
    token = token.strip()
    if token.lower().startswith("bearer "):
        return token[7:].strip()
    return token


@database_sync_to_async
def _get_active_user(user_id):
    return User.objects.filter(id=user_id, is_active=True).first()


class JWTAuthMiddleware(BaseMiddleware):
    """
    Resolve the handshake token before the consumer runs.

    Reads `?token=<jwt>` (optionally prefixed with "Bearer ") and
    `?eventId=<id>` from the query string and fills in:
        scope["user"]        authenticated user or AnonymousUser
        scope["auth_error"]  None, TOKEN_REQUIRED or TOKEN_INVALID
        scope["event_id"]    requested event room or None
    The consumer decides how to close on an auth error.
    """

    async def __call__(self, scope, receive, send):
        query_string = scope.get("query_string", b"").decode()
        params = parse_qs(query_string)

        scope = dict(scope)
        scope["event_id"] = (params.get("eventId") or [None])[0] or None
        scope["user"] = AnonymousUser()
        scope["auth_error"] = None

        raw_token = (params.get("token") or [""])[0]
        token = _strip_bearer(raw_token)
        if not token:
            scope["auth_error"] = TOKEN_REQUIRED
            return await super().__call__(scope, receive, send)

        try:
            access = AccessToken(token)
            user_id = access[api_settings.USER_ID_CLAIM]
        except (TokenError, KeyError) as e:
            logger.debug("JWT auth failed: %s", e)
            scope["auth_error"] = TOKEN_INVALID
            return await super().__call__(scope, receive, send)

        user = await _get_active_user(user_id)
        if user is None:
            logger.debug("JWT auth failed: user %s not found", user_id)
            scope["auth_error"] = TOKEN_INVALID
        else:
            scope["user"] = user

        return await super().__call__(scope, receive, send)
