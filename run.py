"""Convenience runner for the marketplace billing API."""

import uvicorn

from apps.market_api.settings import settings


def main():
    uvicorn.run(
        "apps.market_api.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=not settings.is_production,
        reload_dirs=["apps"],
    )


if __name__ == "__main__":
    main()
