from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("NOTECAL_HOST", "127.0.0.1")
    port = int(os.getenv("NOTECAL_PORT", "8080"))
    uvicorn.run("notecal.web_api:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
