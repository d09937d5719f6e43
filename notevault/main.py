"""
NoteVault Database Core entry point

Runs the administrative API with uvicorn using NOTEVAULT_ settings.
"""

import uvicorn

from notevault.app_factory import create_app
from notevault.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
