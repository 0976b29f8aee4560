"""Keep tests off the on-disk default database.

``config.get_settings`` is cached for the whole process, so the environment
has to be in place before any project module reads it.
"""

import os

os.environ.setdefault("SUBSCRIPTIONS_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SUBSCRIPTIONS_REPORTING_CURRENCY", "IDR")
os.environ.setdefault("SUBSCRIPTIONS_TIMEZONE", "Asia/Jakarta")
