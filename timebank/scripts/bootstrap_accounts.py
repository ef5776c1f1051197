import os
import re
import sys
from typing import List, Optional

from timebank.database import SessionLocal
from timebank.services import ledger_service


CONFIRM_PHRASE = "OPEN-CREDIT-ACCOUNTS"
IDS_RE = re.compile(r"^\s*\d+(\s*,\s*\d+)*\s*$")


def _is_truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _required_env(key: str) -> str:
    value = os.getenv(key, "").strip()
    if not value:
        raise ValueError(f"Missing required environment variable: {key}")
    return value


def _parse_user_ids(raw: str) -> List[int]:
    if not IDS_RE.match(raw):
        raise ValueError("BOOTSTRAP_USER_IDS must be a comma separated list of integers.")
    return sorted({int(part) for part in raw.split(",")})


def bootstrap_accounts() -> int:
    """Open credit accounts for users that the identity service already knows about."""
    try:
        if not _is_truthy(os.getenv("ENABLE_ACCOUNT_BOOTSTRAP")):
            raise ValueError(
                "Bootstrap disabled. Set ENABLE_ACCOUNT_BOOTSTRAP=true to run."
            )
        confirm = _required_env("ACCOUNT_BOOTSTRAP_CONFIRM")
        if confirm != CONFIRM_PHRASE:
            raise ValueError(
                f"Invalid ACCOUNT_BOOTSTRAP_CONFIRM. Expected exact phrase: {CONFIRM_PHRASE}"
            )

        user_ids = _parse_user_ids(_required_env("BOOTSTRAP_USER_IDS"))
        initial = os.getenv("BOOTSTRAP_INITIAL_AMOUNT", "").strip() or None

        db = SessionLocal()
        try:
            opened = 0
            for user_id in user_ids:
                if ledger_service.get_account(db, user_id):
                    print(f"Skipping user {user_id}: account already exists")
                    continue
                ledger_service.open_account(db, user_id, initial)
                opened += 1
            print(f"Opened {opened} credit account(s)")
            return 0
        finally:
            db.close()
    except Exception as exc:
        print(f"Account bootstrap failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(bootstrap_accounts())
