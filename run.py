#!/usr/bin/env python3
"""
Loan Servicing Engine Entry Point

Starts the FastAPI server with the settings read from LOANSVC_* environment
variables (or a .env file).
"""

import sys

from loan_servicing.api import run_server
from loan_servicing.config import get_config
from loan_servicing.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, fmt=config.log_format, log_file=config.log_file)

    print("🏦 Starting Loan Servicing Engine...")
    print(f"💾 Storage: {config.database_url}")
    print(f"💰 Payment allocation: {config.payment_allocation}")
    print(f"🌐 API available at: http://{config.api_host}:{config.api_port}")
    print(f"📚 Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False,
            workers=config.api_workers
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down Loan Servicing Engine...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
