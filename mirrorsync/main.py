from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("MIRRORSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("MIRRORSYNC_PORT", "8080"))
    uvicorn.run("mirrorsync.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
