from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("ESTATESYNC_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("ESTATESYNC_HOST", "0.0.0.0")
    port = int(os.getenv("ESTATESYNC_PORT", "8080"))
    uvicorn.run("estatesync.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
