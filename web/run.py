from __future__ import annotations

import logging

import uvicorn

from app import create_app, load_config


def main() -> None:
    cfg = load_config()
    logging.basicConfig(
        level=cfg.get("logging", {}).get("level", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    host = cfg.get("server", {}).get("host", "127.0.0.1")
    port = int(cfg.get("server", {}).get("port", 8000))
    uvicorn.run(create_app(cfg), host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
