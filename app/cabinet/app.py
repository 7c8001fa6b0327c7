from fastapi import FastAPI

from app.cabinet.routes import admin_promocodes, admin_subscriptions, admin_users, payments


def create_app() -> FastAPI:
    app = FastAPI(title='RemnaWave Storefront Cabinet')
    app.include_router(payments.router)
    app.include_router(admin_promocodes.router)
    app.include_router(admin_subscriptions.router)
    app.include_router(admin_users.router)

    @app.get('/health', include_in_schema=False)
    async def health():
        return {'status': 'ok'}

    return app
