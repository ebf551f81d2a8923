"""Entry point for running Mail Sweeper as a module.

Usage:
    python -m sweeper validate-config
    python -m sweeper --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from sweeper.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
