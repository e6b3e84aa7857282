"""Authentication verification block.

Finds a token in the context, verifies it and checks the user's roles:

    no token          -> UNAUTHORIZED (401)
    expired token     -> TOKEN_EXPIRED (401)
    bad token         -> INVALID_TOKEN (401)
    role not allowed  -> INSUFFICIENT_PERMISSIONS (403)
    otherwise         -> authenticated and authorized
"""

from datetime import datetime, timezone
from typing import Any

import structlog
from jose import ExpiredSignatureError, JWTError, jwt

from blockflow.blocks.base import BaseBlock, BlockContext, BlockOutcome
from blockflow.config import settings
from blockflow.models.node import BlockCategory, BlockDefinition, ConfigField, ConfigFieldType

logger = structlog.get_logger()

TOKEN_PATHS = (
    "session.token",
    "token",
    "authToken",
    "accessToken",
    "headers.authorization",
    "request.headers.authorization",
    "loginResponse.token",
    "authResponse.token",
    "httpResponse.data.token",
)

AUTH_ERRORS = {
    "UNAUTHORIZED": (401, "No authentication token provided"),
    "TOKEN_EXPIRED": (401, "Authentication token has expired"),
    "INVALID_TOKEN": (401, "Invalid authentication token"),
    "INSUFFICIENT_PERMISSIONS": (403, "User lacks the required role"),
}


def extract_token(candidate: Any) -> str | None:
    """Return a bare token from a raw value or an ``Authorization`` header."""
    if not isinstance(candidate, str):
        return None
    token = candidate.strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return token or None


def _role_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, list):
        return [str(item) for item in value if item]
    return []


class AuthVerifyBlock(BaseBlock[dict[str, Any]]):
    """Verify the app user's token and required roles."""

    def get_definition(self) -> BlockDefinition:
        return BlockDefinition(
            label="auth.verify",
            display_name="Verify Authentication",
            description="Check that the user is logged in and has the required role",
            category=BlockCategory.ACTION,
            config=[
                ConfigField(name="requiredRole"),
                ConfigField(name="requiredRoles", type=ConfigFieldType.ARRAY, default=[]),
                ConfigField(name="validateExpiration", type=ConfigFieldType.BOOLEAN, default=True),
                ConfigField(name="token", type=ConfigFieldType.SECRET),
            ],
            outputs=["user", "session", "authVerifyResult", "isAuthenticated", "isAuthorized"],
            tags=["auth"],
        )

    def find_token(self, config: dict[str, Any], ctx: BlockContext) -> str | None:
        for path in TOKEN_PATHS:
            token = extract_token(ctx.data.resolve(path))
            if token:
                return token
        return extract_token(config.get("token"))

    def decode(self, token: str, validate_expiration: bool) -> dict[str, Any]:
        return jwt.decode(
            token,
            settings.jwt_secret_key.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": validate_expiration},
        )

    def failure(
        self,
        reason: str,
        is_authenticated: bool = False,
        user: dict[str, Any] | None = None,
        required_roles: list[str] | None = None,
    ) -> BlockOutcome:
        status_code, message = AUTH_ERRORS[reason]
        verify_result = {
            "isAuthenticated": is_authenticated,
            "isAuthorized": False,
            "failureReason": reason,
            "verifiedAt": datetime.now(timezone.utc).isoformat(),
            "requiredRoles": required_roles or [],
        }
        payload: dict[str, Any] = {
            "isAuthenticated": is_authenticated,
            "isAuthorized": False,
            "errorMessage": message,
        }
        updates: dict[str, Any] = {
            "authVerifyResult": verify_result,
            "isAuthenticated": is_authenticated,
            "isAuthorized": False,
        }
        if user is not None:
            payload["user"] = user
        logger.info("auth_verify_rejected", reason=reason)
        return BlockOutcome(
            success=False,
            payload=payload,
            context_updates=updates,
            error=reason,
            error_code=status_code,
        )

    async def execute(self, config: dict[str, Any], ctx: BlockContext) -> BlockOutcome:
        token = self.find_token(config, ctx)
        if token is None:
            return self.failure("UNAUTHORIZED")

        try:
            claims = self.decode(token, config.get("validateExpiration", True) is not False)
        except ExpiredSignatureError:
            return self.failure("TOKEN_EXPIRED")
        except JWTError:
            return self.failure("INVALID_TOKEN")

        context_user = ctx.data.get("user") if isinstance(ctx.data.get("user"), dict) else {}
        roles: list[str] = []
        for source in (
            claims.get("roles"),
            claims.get("role"),
            context_user.get("roles"),
            context_user.get("role"),
        ):
            for role in _role_list(source):
                if role not in roles:
                    roles.append(role)

        required = _role_list(config.get("requiredRoles")) + _role_list(config.get("requiredRole"))

        email = claims.get("email") or context_user.get("email")
        user = {
            **context_user,
            "id": claims.get("sub") or claims.get("id") or context_user.get("id"),
            "email": email,
            "name": context_user.get("name") or claims.get("name") or (email.split("@")[0] if email else None),
            "role": roles[0] if roles else None,
            "roles": roles,
        }

        if required and not any(role in roles for role in required):
            return self.failure(
                "INSUFFICIENT_PERMISSIONS",
                is_authenticated=True,
                user=user,
                required_roles=required,
            )

        verified_at = datetime.now(timezone.utc).isoformat()
        session = {
            **(ctx.data.get("session") if isinstance(ctx.data.get("session"), dict) else {}),
            "userId": user["id"],
            "email": user["email"],
            "roles": roles,
            "token": token,
            "validatedAt": verified_at,
        }
        verify_result = {
            "isAuthenticated": True,
            "isAuthorized": True,
            "failureReason": None,
            "verifiedAt": verified_at,
            "requiredRoles": required,
        }

        logger.info("auth_verify_passed", user_id=user["id"], execution_id=ctx.execution_id)
        return BlockOutcome(
            success=True,
            payload={"isAuthenticated": True, "isAuthorized": True, "user": user},
            context_updates={
                "token": token,
                "isAuthenticated": True,
                "isAuthorized": True,
                "user": user,
                "session": session,
                "authVerifyResult": verify_result,
            },
        )
