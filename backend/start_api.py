#!/usr/bin/env python3
"""
adchrono API Startup Script

This script starts the adchrono FastAPI server.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the adchrono API server."""
    print("Starting adchrono API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   TOKEN_ENCRYPTION_KEY=<fernet key>")
        print("   REDIS_URL=redis://localhost:6379/0")
        print("")

    try:
        uvicorn.run(
            "adchrono.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["adchrono"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down adchrono API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
