"""
main.py - Server launcher and entry point.

Run this file to start the Smart Match API server:

    python main.py

The operator console is a separate Streamlit app:

    streamlit run dashboard/app.py

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn app:app --reload
"""

from __future__ import annotations

import os

import uvicorn


HOST = os.getenv("SMARTMATCH_HOST", "127.0.0.1")
PORT = int(os.getenv("SMARTMATCH_PORT", "8000"))


def main() -> None:
    """Start the Smart Match API server."""
    print("=" * 60)
    print("  Smart Match Assignment Engine")
    print("=" * 60)
    print(f"  Server   : http://{HOST}:{PORT}")
    print(f"  API docs : http://{HOST}:{PORT}/docs")
    print("  Console  : streamlit run dashboard/app.py")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    # Start uvicorn - this blocks until CTRL+C
    uvicorn.run(
        "app:app",       # points to app.py → app object
        host=HOST,
        port=PORT,
        reload=False,    # one process, so one sweep thread
        log_level="info",
    )


if __name__ == "__main__":
    main()
