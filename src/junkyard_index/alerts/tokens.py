import hashlib
import hmac
from urllib.parse import urlencode


def generate_unsubscribe_token(secret: str, search_id: str) -> str:
    return hmac.new(secret.encode(), search_id.encode(), hashlib.sha256).hexdigest()


def verify_unsubscribe_token(secret: str, search_id: str, token: str) -> bool:
    expected = generate_unsubscribe_token(secret, search_id)
    return hmac.compare_digest(expected, token or "")


def build_unsubscribe_url(app_url: str, secret: str, search_id: str) -> str:
    query = urlencode({"id": search_id, "token": generate_unsubscribe_token(secret, search_id)})
    return f"{app_url.rstrip('/')}/unsubscribe?{query}"
