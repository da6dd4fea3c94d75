"""Run the service: ``python -m wamux``."""

import uvicorn

from wamux.api.factory import create_app
from wamux.config import Settings


def main() -> None:
    settings = Settings.from_env()
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
