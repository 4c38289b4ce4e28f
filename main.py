import asyncio
import logging
import sys

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

# --- EVENT LOOP FIX FOR CLOUD DEPLOYMENT ---
# Telethon requires an active loop during initialization in some environments
loop = asyncio.new_event_loop()
asyncio.set_event_loop(loop)

from telethon import TelegramClient, events, Button
from telethon.sessions import StringSession
from telethon.errors import MessageNotModifiedError
from pymongo.errors import DuplicateKeyError

from cloudbot import config
from cloudbot.cache import MemoryCache
from cloudbot.storage_mongodb import MongoStorage
from cloudbot.scoring import ScoreAggregator, WEEKLY, MONTHLY, FILE_POINTS, REFERRAL_POINTS
from cloudbot.referral import register_user
from cloudbot.rewards import RewardDistributor, RewardRejected
from cloudbot.broadcast import BroadcastDispatcher, format_progress, format_summary
from cloudbot.logger import Logger
from cloudbot.web_server import start_server
from cloudbot.utils import escape_html, format_file_size, display_name

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(message)s",
    level=logging.INFO,
)

# --- CONFIGURATION & DATABASE ---

missing = config.validate_config()
if missing:
    logging.error(f"[ERROR] Missing required config (in .env): {missing}")
    sys.exit(1)

try:
    db = MongoStorage()
except Exception as e:
    logging.error(f"[ERROR] Database Connection Error: {e}")
    sys.exit(1)

cache = MemoryCache()
scores = ScoreAggregator(db, cache)

bot = TelegramClient(
    StringSession(config.BOT_STRING_SESSION) if config.BOT_STRING_SESSION else 'bot',
    config.API_ID,
    config.API_HASH
)

logger = Logger(bot, config.LOG_CHANNEL_ID, db=db)
rewards = RewardDistributor(db, scores, audit=logger)
dispatcher = BroadcastDispatcher(db, bot, delay=config.BROADCAST_DELAY)

# admin_id -> None (waiting for text) or BroadcastJob (waiting for confirmation)
pending_broadcasts = {}

FILE_LIMITS = {
    "document": 50 * 1024 * 1024,
    "video": 50 * 1024 * 1024,
    "audio": 50 * 1024 * 1024,
    "voice": 50 * 1024 * 1024,
    "photo": 10 * 1024 * 1024,
}

MEDALS = {1: "🥇", 2: "🥈", 3: "🥉"}

BOT_USERNAME = ""

# --- HELPERS ---

def profile_of(sender) -> dict:
    return {
        "user_id": sender.id,
        "first_name": getattr(sender, "first_name", "") or "",
        "last_name": getattr(sender, "last_name", "") or "",
        "username": getattr(sender, "username", "") or "",
        "language_code": getattr(sender, "lang_code", "") or "en",
    }

def referral_link(code: str) -> str:
    return f"https://t.me/{BOT_USERNAME}?start={code}"

def format_leaderboard(board) -> str:
    if not board:
        return "No data yet. Be the first!"
    lines = []
    for i, snap in enumerate(board, start=1):
        medal = MEDALS.get(i, f"{i}.")
        name = escape_html(snap.first_name or (f"@{snap.username}" if snap.username else snap.user_id))
        lines.append(
            f"{medal} <b>{name}</b> — {snap.score} pts "
            f"(📁 {snap.file_count} | 👥 {snap.referral_count})"
        )
    return "\n".join(lines)

def main_menu():
    return [
        [Button.inline("📊 My Stats", b"stats"), Button.inline("🏆 Leaderboard", b"lb:weekly")],
        [Button.inline("🎁 Claim Rewards", b"claim"), Button.inline("🤝 Invite", b"invite")],
    ]

def leaderboard_menu():
    return [
        [Button.inline("📅 Weekly", b"lb:weekly"), Button.inline("📆 Monthly", b"lb:monthly")],
        [Button.inline("⬅️ Back", b"menu")],
    ]

async def stats_text(user_id) -> str:
    stats, rank = await asyncio.gather(scores.get_user_stats(user_id), scores.get_rank(user_id))
    if not stats:
        return "❌ No data yet. Send /start first."
    text = (
        "<b>📊 Your Stats</b>\n\n"
        f"<b>📁 Files</b>\n• Total: <b>{stats['total_files']}</b>\n"
        f"• This week: <b>{stats['weekly_files']}</b> (+{stats['weekly_files'] * FILE_POINTS} pts)\n"
        f"• This month: <b>{stats['monthly_files']}</b>\n\n"
        f"<b>👥 Referrals</b>\n• Total: <b>{stats['total_referrals']}</b>\n"
        f"• This week: <b>{stats['weekly_referrals']}</b> (+{stats['weekly_referrals'] * REFERRAL_POINTS} pts)\n\n"
        f"<b>⚡️ Score</b>\n• Weekly: <b>{stats['week_score']}</b>\n• Monthly: <b>{stats['month_score']}</b>\n"
    )
    if rank:
        text += (
            f"\n<b>🏆 Rank</b>\n• Weekly: #{rank['weekly_rank']} of {rank['total_users']}\n"
            f"• Monthly: #{rank['monthly_rank']} of {rank['total_users']}\n"
        )
    text += f"\n<b>💎 Diamond Balance:</b> <b>{stats['diamonds']}</b> 💎"
    return text

async def leaderboard_text(period) -> str:
    board = await scores.get_leaderboard(period, 10)
    title = "📅 Weekly Leaderboard" if period == WEEKLY else "📆 Monthly Leaderboard"
    return f"<b>{title}</b>\n\n{format_leaderboard(board)}"

async def claim_text(user_id) -> str:
    try:
        award = await rewards.claim_reward(user_id)
    except RewardRejected as e:
        if e.reason == RewardRejected.NOT_ELIGIBLE:
            return (
                "<b>⚠️ No Reward Available</b>\n\nYou are not in the Top 10 this week.\n\n"
                "Upload more files and invite friends to climb the leaderboard!"
            )
        return f"❌ <b>Error:</b>\n<code>{escape_html(e.message)}</code>"
    return (
        "<b>🎁 Reward Claimed!</b>\n\n"
        f"{award.badge} {award.title}  <b>+{award.diamonds} 💎</b>\n\n"
        f"<b>New balance:</b> {award.balance} 💎\n\nKeep it up to earn more next week!"
    )

# --- USER COMMANDS ---

@bot.on(events.NewMessage(pattern=r'^/start(?:\s+(\S+))?$', func=lambda e: e.is_private))
async def start_cmd(event):
    sender = await event.get_sender()
    ref_param = event.pattern_match.group(1)
    try:
        user, created = await register_user(db, cache, profile_of(sender), ref_param=ref_param)
    except Exception as e:
        logging.error(f"[ERROR] /start failed for {event.sender_id}: {e}")
        return await event.reply("❌ Something went wrong, please try again.")

    if created and user.get("referred_by"):
        await logger.log("REFERRAL", display_name(user), user["user_id"], f"**Referred by:** `{user['referred_by']}`")

    text = (
        f"👋 <b>Welcome, {escape_html(display_name(user))}!</b>\n\n"
        "Send me any file to store it in your cloud.\n"
        f"⚡️ +{FILE_POINTS} pts per file, +{REFERRAL_POINTS} pts per invited friend.\n\n"
        f"🔗 Your invite link:\n<code>{referral_link(user['ref_code'])}</code>"
    )
    await event.reply(text, parse_mode="html", buttons=main_menu())

@bot.on(events.NewMessage(pattern=r'^/stats$', func=lambda e: e.is_private))
async def stats_cmd(event):
    await event.reply(await stats_text(event.sender_id), parse_mode="html", buttons=main_menu())

@bot.on(events.NewMessage(pattern=r'^/(?:top|leaderboard)(?:\s+(weekly|monthly))?$'))
async def leaderboard_cmd(event):
    period = event.pattern_match.group(1) or WEEKLY
    await event.reply(await leaderboard_text(period), parse_mode="html", buttons=leaderboard_menu())

@bot.on(events.NewMessage(pattern=r'^/claim$', func=lambda e: e.is_private))
async def claim_cmd(event):
    await event.reply(await claim_text(event.sender_id), parse_mode="html")

# --- FILE UPLOADS ---

def file_kind(event) -> str:
    if event.photo:
        return "photo"
    if event.voice:
        return "voice"
    if event.video:
        return "video"
    if event.audio:
        return "audio"
    return "document"

@bot.on(events.NewMessage(func=lambda e: e.is_private and e.file is not None))
async def file_handler(event):
    sender = await event.get_sender()
    user, _ = await register_user(db, cache, profile_of(sender))

    kind = file_kind(event)
    f = event.file
    size = f.size or 0
    max_size = FILE_LIMITS.get(kind, 50 * 1024 * 1024)
    if size > max_size:
        return await event.reply(f"❌ File too large. Maximum allowed: {format_file_size(max_size)}")

    media = event.photo or event.document
    meta = {
        "kind": kind,
        "file_id": f.id,
        "file_unique_id": str(media.id) if media else None,
        "file_name": f.name or f"{kind}_{int(event.date.timestamp())}{f.ext or ''}",
        "mime_type": f.mime_type or "",
        "file_size": size,
    }
    try:
        inserted_id = await scores.record_file(user["user_id"], meta)
    except DuplicateKeyError:
        return await event.reply("ℹ️ This file is already stored in the cloud.")
    except Exception as e:
        logging.error(f"[ERROR] Saving file for {user['user_id']} failed: {e}")
        return await event.reply(f"❌ <b>Error:</b>\n<code>{escape_html(str(e)[:300])}</code>", parse_mode="html")

    await event.reply(
        "✅ <b>File saved successfully!</b>\n\n"
        f"📄 <b>Name:</b> <code>{escape_html(meta['file_name'])}</code>\n"
        f"📁 <b>Type:</b> {kind}\n"
        f"💾 <b>Size:</b> {format_file_size(size)}\n"
        f"⚡️ <b>Points earned:</b> +{FILE_POINTS} pts\n"
        f"🆔 <b>ID:</b> <code>{inserted_id}</code>",
        parse_mode="html",
        buttons=main_menu()
    )

# --- ADMIN COMMANDS ---

@bot.on(events.NewMessage(pattern=r'^/admin$'))
async def admin_cmd(event):
    if not config.is_admin(event.sender_id): return
    overview = await scores.admin_overview()
    if not overview:
        return await event.reply("❌ Could not load stats right now.")
    await event.reply(
        "<b>👑 Admin Overview</b>\n\n"
        f"👥 Users: <b>{overview['total_users']}</b> (+{overview['new_users']} today)\n"
        f"📁 Files: <b>{overview['total_files']}</b> (+{overview['new_files']} today)\n"
        f"🚫 Blocked: <b>{overview['blocked_users']}</b>",
        parse_mode="html"
    )

@bot.on(events.NewMessage(pattern=r'^/rewards$'))
async def rewards_cmd(event):
    if not config.is_admin(event.sender_id): return
    msg = await event.reply("⏳ Distributing weekly rewards...")
    try:
        results = await rewards.distribute_weekly_rewards()
    except RewardRejected as e:
        if not e.applied:
            return await msg.edit(f"❌ {escape_html(e.message)}", parse_mode="html")
        results = e.applied
        await event.reply(f"⚠️ {escape_html(e.message)}", parse_mode="html")

    if not results:
        return await msg.edit("❌ No eligible users to reward")

    text = "<b>🏆 Weekly Rewards Distributed</b>\n\n"
    for award in results:
        name = escape_html(award.first_name or award.user_id)
        text += f"{award.badge} <b>{name}</b>: +{award.diamonds} 💎 ({award.title})\n"
    await msg.edit(text, parse_mode="html")

@bot.on(events.NewMessage(pattern=r'^/logs$'))
async def logs_cmd(event):
    if not config.is_admin(event.sender_id): return
    try:
        entries = await db.get_logs(limit=15)
    except Exception as e:
        logging.error(f"❌ get_logs error: {e}")
        return await event.reply("❌ Could not load logs right now.")
    if not entries:
        return await event.reply("📭 No actions logged yet.")

    text = "<b>📜 Recent Actions</b>\n\n"
    for entry in entries:
        stamp = entry["timestamp"].strftime("%m-%d %H:%M")
        text += f"<code>{stamp}</code> {escape_html(entry.get('action'))} (<code>{entry.get('user_id')}</code>)\n"
    await event.reply(text, parse_mode="html")

@bot.on(events.NewMessage(pattern=r'^/broadcast$'))
async def broadcast_cmd(event):
    if not config.is_admin(event.sender_id): return
    pending_broadcasts[event.sender_id] = None
    await event.reply(
        "<b>📢 Broadcast Message</b>\n\nType the message you want to send to all users.\n"
        "HTML formatting is supported.\n\nSend /cancel to abort.",
        parse_mode="html"
    )

@bot.on(events.NewMessage(pattern=r'^/cancel$'))
async def cancel_cmd(event):
    if event.sender_id not in pending_broadcasts: return
    job = pending_broadcasts.pop(event.sender_id)
    if job is not None:
        dispatcher.cancel(job)
    await event.reply("✅ Broadcast cancelled.")

@bot.on(events.NewMessage(func=lambda e: e.is_private and e.sender_id in pending_broadcasts
                          and pending_broadcasts.get(e.sender_id) is None
                          and e.raw_text and not e.raw_text.startswith('/')))
async def broadcast_text_handler(event):
    job = dispatcher.create_job(event.raw_text)
    pending_broadcasts[event.sender_id] = job
    await event.reply(
        "Send this message to every user?",
        buttons=[[Button.inline("✅ Send", b"bc:send"), Button.inline("❌ Cancel", b"bc:cancel")]]
    )

@bot.on(events.CallbackQuery(pattern=rb'^bc:(send|cancel)$'))
async def broadcast_callback(event):
    if not config.is_admin(event.sender_id):
        return await event.answer("Access denied", alert=True)
    action = event.pattern_match.group(1).decode()
    job = pending_broadcasts.pop(event.sender_id, None)
    if job is None:
        return await event.answer("Nothing to send", alert=True)

    if action == "cancel":
        dispatcher.cancel(job)
        return await event.edit("✅ Broadcast cancelled.")

    await event.edit("📤 Starting broadcast…")

    async def on_progress(j):
        try:
            await event.edit(format_progress(j))
        except MessageNotModifiedError:
            pass

    await dispatcher.run(job, on_progress=on_progress)
    await event.edit(format_summary(job), parse_mode="html")
    await logger.log(
        "BROADCAST", display_name(await event.get_sender()), event.sender_id,
        f"**Sent:** {job.sent} | **Failed:** {job.failed} | **Blocked:** {job.blocked}"
    )

# --- MENU CALLBACKS ---

@bot.on(events.CallbackQuery(pattern=rb'^(menu|stats|claim|invite|lb:weekly|lb:monthly)$'))
async def menu_callback(event):
    action = event.data.decode()
    user_id = event.sender_id
    try:
        if action == "menu":
            await event.edit("<b>📋 Main Menu</b>", parse_mode="html", buttons=main_menu())
        elif action == "stats":
            await event.edit(await stats_text(user_id), parse_mode="html", buttons=main_menu())
        elif action == "claim":
            await event.edit(await claim_text(user_id), parse_mode="html", buttons=main_menu())
        elif action == "invite":
            user = await db.get_user(user_id)
            if not user or not user.get("ref_code"):
                return await event.answer("Send /start first", alert=True)
            await event.edit(
                "<b>🤝 Invite Friends</b>\n\n"
                f"Each friend who joins with your link gives you +{REFERRAL_POINTS} pts.\n\n"
                f"<code>{referral_link(user['ref_code'])}</code>",
                parse_mode="html", buttons=main_menu()
            )
        else:
            period = MONTHLY if action.endswith(MONTHLY) else WEEKLY
            await event.edit(await leaderboard_text(period), parse_mode="html", buttons=leaderboard_menu())
    except MessageNotModifiedError:
        pass # Ignore redundant edits
    except Exception as e:
        logging.error(f"[ERROR] Callback Error: {e}")

# --- STARTUP ---

async def main():
    global BOT_USERNAME
    logging.info("Starting Web Server...")
    start_server()

    await bot.start(bot_token=config.BOT_TOKEN)
    me = await bot.get_me()
    BOT_USERNAME = me.username or ""

    await db.ensure_indexes()
    # Start background score write-back
    db.write_queue.start()

    await logger.log("SYSTEM", "Bot", 0, "Bot Started", "Status: Online")
    logging.info("Online.")

    try:
        await bot.run_until_disconnected()
    finally:
        await db.close()
        cache.clear()

if __name__ == '__main__':
    try:
        loop.run_until_complete(main())
    except KeyboardInterrupt:
        pass
