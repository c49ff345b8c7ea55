#!/usr/bin/env python3
"""
CoBanker Ledger Service Entry Point

Starts the FastAPI server with settings from the COBANKER_* environment.
"""

import sys

from cobanker.api import run_server
from cobanker.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting CoBanker ledger service...")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down CoBanker...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
