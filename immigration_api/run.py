#!/usr/bin/env python3
"""
Quick runner for Immigration Case API
=====================================

Usage:
    python -m immigration_api.run
    # or
    python immigration_api/run.py
"""

import os

import uvicorn

if __name__ == "__main__":
    port = int(os.environ.get("PORT", "8000"))
    print("Starting Immigration Case API...")
    print(f"API docs: http://localhost:{port}/docs")
    print(f"Health:   http://localhost:{port}/health")
    print()

    uvicorn.run(
        "immigration_api.api:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("ENVIRONMENT", "development") == "development",
    )
