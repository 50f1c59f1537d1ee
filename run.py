"""Run the gatewayd service."""

import uvicorn

from gatewayd.config import config

if __name__ == "__main__":
    uvicorn.run(
        "gatewayd.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
