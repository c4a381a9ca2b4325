# src/partsync_bff/__main__.py

import uvicorn

from .config import settings


def main() -> None:
    uvicorn.run(
        "partsync_bff.main:app",
        host=settings.BFF_HOST,
        port=settings.BFF_PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.ENVIRONMENT == "development",
    )


if __name__ == "__main__":
    main()
