"""Run the relay with uvicorn: ``python -m relay``."""

import uvicorn
from dotenv import load_dotenv

from relay.config import load_settings


def main() -> None:
    load_dotenv()
    settings = load_settings()
    uvicorn.run(
        "relay.transport.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
