"""Command-line entry point for the API server."""
import uvicorn

from proofpay.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "proofpay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
