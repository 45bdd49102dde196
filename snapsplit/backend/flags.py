import os

# NOTIFICATIONS_ENABLED    push bill-updated events to the configured notifier
# SETTLEMENT_STALE_MARKS   report settled markers that no longer match a transfer


def enabled(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").lower() == "true"
