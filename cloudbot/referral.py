import logging
import secrets
import time
from typing import Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from cloudbot.cache import (
    MemoryCache, USER_TTL, user_key, invalidate_user, invalidate_leaderboards
)
from cloudbot.utils import utcnow, fire_and_forget

DEFAULT_PREFIX = "USR"
CODE_LENGTH = 10
FALLBACK_LENGTH = 14
CANDIDATES = 5

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def code_prefix(first_name) -> str:
    """Up to three letters of the name, uppercased; anything not A-Z becomes X"""
    if not first_name or not isinstance(first_name, str):
        return DEFAULT_PREFIX
    return "".join(c if "A" <= c <= "Z" else "X" for c in first_name.upper()[:3])


def candidate_code(prefix: str) -> str:
    return (prefix + secrets.token_hex(3).upper())[:CODE_LENGTH]


def fallback_code() -> str:
    stamp = to_base36(int(time.time() * 1000))
    return f"REF{stamp}{secrets.token_hex(2).upper()}"[:FALLBACK_LENGTH]


async def generate_referral_code(storage, first_name: str = "") -> str:
    """Pick a free code with a single existence check for the whole batch"""
    prefix = code_prefix(first_name)
    candidates = [candidate_code(prefix) for _ in range(CANDIDATES)]

    existing = await storage.find_existing_ref_codes(candidates)
    for candidate in candidates:
        if candidate not in existing:
            return candidate

    logging.warning(f"⚠️ All {CANDIDATES} referral candidates taken for prefix {prefix}, using fallback")
    return fallback_code()


def _is_ref_code_clash(err: DuplicateKeyError) -> bool:
    details = err.details or {}
    if "ref_code" in (details.get("keyPattern") or {}):
        return True
    return "ref_code" in str(err)


async def ensure_ref_code(storage, user: Dict) -> Optional[str]:
    """Return the account's code, assigning one first if it predates referral codes"""
    if user.get("ref_code"):
        return user["ref_code"]

    for attempt in range(2):
        code = await generate_referral_code(storage, user.get("first_name"))
        try:
            if await storage.set_ref_code(user["user_id"], code):
                user["ref_code"] = code
                return code
            break
        except DuplicateKeyError:
            if attempt:
                raise
    # Someone else assigned it concurrently
    fresh = await storage.get_user(user["user_id"])
    return fresh.get("ref_code") if fresh else None


async def process_referral(storage, cache: MemoryCache, new_user_id: int, ref_code: str) -> Optional[Dict]:
    """Attribute a new account to the owner of `ref_code`.

    Unknown codes, self-referrals and accounts that already have a referrer
    are ignored. Returns the referrer document when a link was made.
    """
    if not ref_code:
        return None
    try:
        referrer = await storage.find_user_by_ref_code(ref_code)
        if not referrer or referrer["user_id"] == new_user_id:
            return None
        if not await storage.set_referrer(new_user_id, referrer["user_id"]):
            return None
    except Exception as e:
        logging.error(f"❌ process_referral error [{new_user_id}]: {e}")
        return None

    invalidate_user(cache, new_user_id)
    invalidate_user(cache, referrer["user_id"])
    invalidate_leaderboards(cache)
    return referrer


def _profile_fields(profile: Dict, now) -> Dict:
    return {
        "first_name": profile.get("first_name") or "",
        "last_name": profile.get("last_name") or "",
        "username": profile.get("username") or "",
        "language_code": profile.get("language_code") or "en",
        "last_active_at": now,
    }


async def register_user(storage, cache: MemoryCache, profile: Dict,
                        ref_param: str = None, clock=utcnow) -> Tuple[Dict, bool]:
    """Upsert the account behind a chat user; returns `(user, created)`.

    New accounts get a fresh referral code and, when `ref_param` names
    another account's code, are attributed to that account.
    """
    user_id = profile["user_id"]
    now = clock()
    fields = _profile_fields(profile, now)
    k = user_key(user_id)

    cached = cache.get(k)
    if cached is not None:
        fire_and_forget(storage.touch_user(user_id, fields), f"touch_user {user_id}")
        return cached, False

    user = await storage.get_user(user_id)
    if user:
        await storage.touch_user(user_id, fields)
        user.update(fields)
        await ensure_ref_code(storage, user)
        cache.set(k, user, USER_TTL)
        return user, False

    for attempt in range(2):
        doc = {
            "user_id": user_id,
            **fields,
            "ref_code": await generate_referral_code(storage, fields["first_name"]),
            "referred_by": None,
            "ref_count": 0,
            "diamonds": 0,
            "week_score": 0,
            "month_score": 0,
            "ref_awarded_at": None,
            "is_blocked": False,
            "started_at": now,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await storage.create_user(doc)
            break
        except DuplicateKeyError as e:
            if _is_ref_code_clash(e) and attempt == 0:
                logging.warning(f"⚠️ Referral code clash on insert [{user_id}], regenerating")
                continue
            # Lost a race with a concurrent /start for the same account
            existing = await storage.get_user(user_id)
            if existing is None:
                raise
            return existing, False

    if ref_param:
        referrer = await process_referral(storage, cache, user_id, ref_param)
        if referrer:
            doc["referred_by"] = referrer["user_id"]

    cache.set(k, doc, USER_TTL)
    return doc, True
