import uvicorn

from billing_sync.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "billing_sync.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
