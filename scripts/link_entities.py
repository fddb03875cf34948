#!/usr/bin/env python3
"""CLI script to run one entity linking pass.

Usage:
    uv run python scripts/link_entities.py
    uv run python scripts/link_entities.py --dry-run --json

Connects directly to the database using DATABASE_URL from environment or .env file.
Links contacts to companies by e-mail domain, then deals to those contacts,
and prints a coverage report.
"""

from __future__ import annotations

import os
import sys

# Ensure project root is on sys.path so we can import src.crm_linker
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


if __name__ == "__main__":
    from src.crm_linker.cli import main

    sys.exit(main())
