import os
import webbrowser
import threading
import time
import uvicorn
from server import app

HOST = os.environ.get("FOLIO_HOST", "127.0.0.1")
PORT = int(os.environ.get("FOLIO_PORT", "8123"))


def reader_url() -> str:
    return f"http://{HOST}:{PORT}"


def open_browser():
    """Open the browser after a short delay to ensure server is running."""
    time.sleep(2)
    try:
        webbrowser.open(reader_url())
    except Exception as e:
        print(f"Could not open browser: {e}")


def main():
    print(f"Starting Folio at {reader_url()}")

    # Start browser in a separate thread
    threading.Thread(target=open_browser, daemon=True).start()

    uvicorn.run(app, host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()
