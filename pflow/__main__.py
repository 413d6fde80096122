import uvicorn

from pflow.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "pflow.main:app",
        host=settings.http_host,
        port=settings.http_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
