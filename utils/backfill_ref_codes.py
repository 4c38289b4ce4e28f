"""
Assign referral codes to accounts created before codes existed.
Safe to re-run: accounts that already have a code are never touched.
"""

import os
import sys
import asyncio

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cloudbot.storage_mongodb import MongoStorage
from cloudbot.referral import ensure_ref_code


async def backfill(storage, batch_size=100):
    """Returns how many accounts received a code"""
    assigned = 0
    while True:
        batch = await storage.users_missing_ref_code(limit=batch_size)
        if not batch:
            break
        progressed = False
        for user in batch:
            code = await ensure_ref_code(storage, user)
            if code:
                assigned += 1
                progressed = True
                print(f"[OK] {user['user_id']} -> {code}")
        if not progressed:
            print("[WARN] No progress on this batch, stopping")
            break
    return assigned


async def main():
    try:
        storage = MongoStorage()
    except ValueError as e:
        print(f"[ERROR] {e}")
        return False
    total = await backfill(storage)
    print(f"[INFO] Backfilled {total} referral codes")
    await storage.close()
    return True


if __name__ == "__main__":
    success = asyncio.run(main())
    sys.exit(0 if success else 1)
