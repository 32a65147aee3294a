"""Project root entry point for launching the web interface."""

from __future__ import annotations

import os


def main():
    from transync.web import create_app

    app = create_app()
    port = int(os.environ.get("TRANSYNC_PORT", "5500"))
    app.run(host="0.0.0.0", port=port, debug=os.environ.get("TRANSYNC_DEBUG") == "1")


if __name__ == "__main__":
    main()
