#!/usr/bin/env python3
"""
Atomic Ledger Entry Point

Starts the FastAPI server with host and port taken from the environment
(ATOMIC_LEDGER_API_HOST / ATOMIC_LEDGER_API_PORT).
"""

import sys

from atomic_ledger.api import run_server
from atomic_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Atomic Ledger API...")
    print(f"Database: {config.database_url}")
    print(f"Chaos target node: {config.chaos_node}")
    print(f"API available at: http://localhost:{config.api_port}")
    print()
    
    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Atomic Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
