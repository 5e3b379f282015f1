"""
Courier Runner

Entry point for running the Courier API.
"""
import uvicorn
import logging
import os

from .config import Config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("courier")


def run():
    """Run the Courier API"""
    logger.info(f"Starting Courier on {Config.API_HOST}:{Config.API_PORT} (broker={Config.QUEUE_BROKER})")

    uvicorn.run(
        "courier.app:app",
        host=Config.API_HOST,
        port=Config.API_PORT,
        reload=os.getenv("DEBUG", "false").lower() == "true"
    )


if __name__ == "__main__":
    run()
