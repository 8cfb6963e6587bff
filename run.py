"""
Run the settlement API server on port 3010.
Usage: python3 run.py
"""
import uvicorn

from config import settings

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=3010,
        reload=settings.debug,
    )
