import logging
import os
import uvicorn

if __name__ == "__main__":
    host = os.environ.get("CLASSPULSE_HOST", "localhost")
    port = int(os.environ.get("CLASSPULSE_PORT", "5000"))
    log_level = os.environ.get("CLASSPULSE_LOG_LEVEL", "info").lower()
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "classpulse.server:app",
        host=host,
        port=port,
        log_level=log_level,
        reload=True,
        reload_dirs=["classpulse"],
    )
