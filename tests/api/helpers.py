GATEWAY_TOKEN = "gw-test-token"
INTERNAL_TOKEN = "internal-secret"
INTERNAL_HEADERS = {"X-Internal-Token": INTERNAL_TOKEN}


def session_headers(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-Gateway-Token": GATEWAY_TOKEN}
