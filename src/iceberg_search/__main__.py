"""Run the API with ``python -m iceberg_search``."""

import uvicorn

from iceberg_search.config import settings


def main() -> None:
    uvicorn.run(
        "iceberg_search.main:app",
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
