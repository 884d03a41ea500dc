"""Main entry point for calrelay."""
import os
import sys
import uvicorn
from pathlib import Path
from .app import create_app


def main():
    """Run the application."""
    data_dir = Path(os.environ.get("DATA_DIR", "/data"))

    # Allow override via command line
    if len(sys.argv) > 1:
        data_dir = Path(sys.argv[1])

    app = create_app(data_dir)
    config = app.state.config

    print(f"Starting calrelay on port {config.port}")
    print(f"Data directory: {data_dir}")
    for identity in config.identities.values():
        print(f"Calendar feed: http://localhost:{config.port}/calendars/{identity.filename}")

    uvicorn.run(app, host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    main()
