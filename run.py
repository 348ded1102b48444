#!/usr/bin/env python3
# run.py
"""
Development server runner.

Falls back to the in-memory cache and the mock payment gateway unless
REDIS_URL / MOYASAR_SECRET_KEY are set in the environment or .env.
"""
import os

import uvicorn

if __name__ == "__main__":
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    print(f"Starting LUDUS API at http://{host}:{port} (docs at /docs)")

    uvicorn.run("ludus.main:app", host=host, port=port, reload=True, log_level="info")
