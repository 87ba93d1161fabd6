from __future__ import annotations

import argparse

import uvicorn

from trustplane.core.config import get_settings


def main(argv: list[str] | None = None) -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Serve the trustplane API")
    parser.add_argument("--host", default=settings.api_host)
    parser.add_argument("--port", type=int, default=settings.api_port)
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    args = parser.parse_args(argv)
    # The app configures root logging itself; uvicorn's loggers propagate into it.
    uvicorn.run(
        "trustplane.apps.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_config=None,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
