# app/main.py

import uvicorn

import app.config as config
from app.utils.logger import log_info
from app.observability.logger import configure_logging


def main():
    """ Main entry point for the application startup. """
    # Configure structured JSON logging as early as possible
    configure_logging(config)

    log_info(f"Server starting at http://{config.HOST}:{config.PORT}")
    # uvicorn handles SIGINT/SIGTERM and drains connections on shutdown
    uvicorn.run(
        "app.main_fastapi:create_app",
        factory=True,
        host=config.HOST,
        port=config.PORT,
        log_config=None,  # keep the JSON handlers configured above
        reload=config.DEBUG,
    )


if __name__ == "__main__":
    main()
