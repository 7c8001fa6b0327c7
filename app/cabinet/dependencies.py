import hmac
from collections.abc import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.database import AsyncSessionLocal


async def get_cabinet_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


def _token_matches(provided: str | None, expected: str) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


async def require_admin(authorization: str | None = Header(default=None)) -> None:
    token = None
    if authorization and authorization.lower().startswith('bearer '):
        token = authorization[7:].strip()
    if not _token_matches(token, settings.WEB_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={'error_code': 'UNAUTHORIZED', 'message_ru': 'Требуется токен администратора'},
        )


async def verify_payment_webhook(x_webhook_secret: str | None = Header(default=None)) -> None:
    if not _token_matches(x_webhook_secret, settings.PAYMENT_WEBHOOK_SECRET):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={'error_code': 'INVALID_WEBHOOK_SECRET', 'message_ru': 'Неверная подпись запроса'},
        )
