import hmac

from app.core.config import UNSET_SECRET, settings


def _key_matches(incoming: str | None, expected: str) -> bool:
    # an unconfigured secret still holds the placeholder; nothing may match it
    if not incoming or not expected or expected == UNSET_SECRET:
        return False
    return hmac.compare_digest(incoming.encode("utf-8"), expected.encode("utf-8"))


def webhook_key_matches(incoming: str | None) -> bool:
    # Constant-time compare against the shared secret configured on the courier side.
    return _key_matches(incoming, settings.courier_webhook_secret.get_secret_value())


def internal_key_matches(incoming: str | None) -> bool:
    return _key_matches(incoming, settings.internal_admin_key)
