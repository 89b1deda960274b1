"""
Local development server for the FastAPI application.
Run this from the root directory: python -m weather_aggregator.local_dev
"""

from pathlib import Path

import uvicorn
from dotenv import load_dotenv

root_dir = Path(__file__).parent.parent


def main():
    # Settings are read at import time, so .env must load before the app
    env_file = root_dir / ".env"
    if env_file.exists():
        load_dotenv(env_file)
        print(f"Loaded environment variables from {env_file}")
    else:
        print("No .env file found. Environment variables from shell will be used.")

    print("Starting Weather Aggregator...")
    print("API Documentation: http://localhost:8000/docs")

    uvicorn.run(
        "weather_aggregator.lambda_function:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )


if __name__ == "__main__":
    main()
