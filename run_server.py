#!/usr/bin/env python3
"""Run the web server."""
import uvicorn

from planrunner.config import SERVER_HOST, SERVER_PORT

if __name__ == "__main__":
    uvicorn.run("planrunner.server:app", host=SERVER_HOST, port=SERVER_PORT, reload=True)
