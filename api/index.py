"""
ROBEKC GAMES Top Up - Main FastAPI Application

Single entry point for the storefront API, payment webhook and Telegram webhook.
"""
import sys
from pathlib import Path

# Make the project importable when deployed without installation (Vercel)
_base_path = Path(__file__).resolve().parent.parent
if str(_base_path) not in sys.path:
    sys.path.insert(0, str(_base_path))

from topup.app import create_app  # noqa: E402

app = create_app()
