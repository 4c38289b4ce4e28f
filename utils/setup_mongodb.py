"""
Create the MongoDB indexes the bot relies on.
Run this once after creating your MongoDB cluster (the bot also runs it on startup).
"""

import os
import sys
import asyncio

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cloudbot.storage_mongodb import MongoStorage


async def create_all_indexes():
    try:
        storage = MongoStorage()
    except ValueError as e:
        print(f"[ERROR] {e}")
        return False

    print("[INFO] Creating Indexes...")
    await storage.ensure_indexes()

    for name in ("users", "files", "action_logs"):
        info = await storage.db[name].index_information()
        print(f"[SUCCESS] {name}: {', '.join(sorted(info))}")

    await storage.close()
    return True


if __name__ == "__main__":
    success = asyncio.run(create_all_indexes())
    sys.exit(0 if success else 1)
