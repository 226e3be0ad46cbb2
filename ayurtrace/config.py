"""
AyurTrace - Configuration
Settings are read from environment variables with development defaults
"""

import os

DATABASE_PATH = os.environ.get(
    'AYURTRACE_DB_PATH',
    os.path.join(os.path.dirname(__file__), 'ayurtrace.db')
)

PORT = int(os.environ.get('PORT', 5001))

# Simulated ledger-commit latency for create_transaction (seconds)
LEDGER_DELAY_SECONDS = float(os.environ.get('LEDGER_DELAY_SECONDS', 1.0))

VERIFY_BASE_URL = os.environ.get('VERIFY_BASE_URL', 'https://verify.ayurtrace.com/product')


def as_dict():
    """Current settings, used as Flask config defaults"""
    return {
        'DATABASE_PATH': DATABASE_PATH,
        'LEDGER_DELAY_SECONDS': LEDGER_DELAY_SECONDS,
        'VERIFY_BASE_URL': VERIFY_BASE_URL,
    }
