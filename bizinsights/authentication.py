"""Session-based login for the SQLAdmin panel.

The panel is an operator tool (inspect integrations, replay-debug the webhook
ledger); it is not tied to organization membership. One username/password
pair from settings grants access; the session cookie is signed with
ADMIN_SECRET_KEY by Starlette's SessionMiddleware.
"""

import hmac
import logging

from sqladmin.authentication import AuthenticationBackend
from starlette.requests import Request

from .deps import get_settings

logger = logging.getLogger(__name__)


class SimpleAuth(AuthenticationBackend):
    async def login(self, request: Request) -> bool:
        settings = get_settings()
        if not settings.ADMIN_PASSWORD:
            logger.warning("[ADMIN] Login attempted but ADMIN_PASSWORD is not set")
            return False

        form = await request.form()
        username = str(form.get("username") or "")
        password = str(form.get("password") or "")
        valid = hmac.compare_digest(username, settings.ADMIN_USERNAME) and hmac.compare_digest(
            password, settings.ADMIN_PASSWORD
        )
        if not valid:
            logger.warning("[ADMIN] Failed login for %r", username)
            return False

        request.session.update({"admin_user": username})
        logger.info("[ADMIN] %s logged in", username)
        return True

    async def logout(self, request: Request) -> bool:
        request.session.clear()
        return True

    async def authenticate(self, request: Request) -> bool:
        return "admin_user" in request.session
