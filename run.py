import logging
import os

import uvicorn
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Get port from environment variable or use default
    port = int(os.getenv("PORT", "8000"))

    # Run the FastAPI application
    uvicorn.run(
        "access_governance.main:app",
        host="0.0.0.0",
        port=port,
        reload=True  # Enable auto-reload for development
    )
