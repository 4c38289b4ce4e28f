"""
Log the bot in once and print a StringSession for BOT_STRING_SESSION.
Hosts with an ephemeral disk lose the `bot.session` file on every deploy;
a string session in the environment survives restarts.
"""

import os
import sys
import asyncio

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from telethon import TelegramClient
from telethon.sessions import StringSession

from cloudbot import config


async def create_session():
    if not config.API_ID or not config.API_HASH or not config.BOT_TOKEN:
        print("[ERROR] API_ID, API_HASH and BOT_TOKEN must be set in .env")
        return None

    client = TelegramClient(StringSession(), config.API_ID, config.API_HASH)
    await client.start(bot_token=config.BOT_TOKEN)
    try:
        me = await client.get_me()
        print(f"[INFO] Logged in as @{me.username}")
        return client.session.save()
    finally:
        await client.disconnect()


if __name__ == "__main__":
    session = asyncio.run(create_session())
    if not session:
        sys.exit(1)
    print("\n" + "-" * 50)
    print(session)
    print("-" * 50)
    print("\nSet this value as BOT_STRING_SESSION in your environment.")
