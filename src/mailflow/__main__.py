"""Entry point for running mailflow as a module.

Usage:
    python -m mailflow validate-config
    python -m mailflow --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from mailflow.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
