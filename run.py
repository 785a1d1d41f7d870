#!/usr/bin/env python3
"""
Run the libSQL JWT Router server.

Usage:
    python run.py

    # or with venv
    .venv/bin/python run.py
"""
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))


def run_fastapi():
    """Run with FastAPI/uvicorn"""
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    log_level = os.getenv("LOG_LEVEL", "info").lower()

    print(f"Starting FastAPI/uvicorn server on {host}:{port}")
    uvicorn.run(
        'libsql_jwt_router.main:app',
        host=host,
        port=port,
        log_level=log_level,
    )


if __name__ == "__main__":
    run_fastapi()
