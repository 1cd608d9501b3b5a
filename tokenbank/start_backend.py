#!/usr/bin/env python3
"""
Serve the tokenbank API with uvicorn.

    python -m tokenbank.start_backend --port 8000
"""
import argparse
import os
import sys


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the tokenbank API server.")
    parser.add_argument("--host", default=os.getenv("TOKENBANK_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("TOKENBANK_PORT", "8000")))
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development only).")
    args = parser.parse_args()

    import uvicorn

    print(f"[tokenbank] Server: http://{args.host}:{args.port}")
    try:
        uvicorn.run(
            "tokenbank.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[tokenbank] Shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
