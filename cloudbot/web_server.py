from flask import Flask
import threading
import logging

import time
import requests

from cloudbot import config

app = Flask(__name__)

# Disable Flask's default logging to keep terminal clean
log = logging.getLogger('werkzeug')
log.setLevel(logging.ERROR)

PING_INTERVAL = 10 * 60


@app.route('/')
def home():
    return "Bot is Online", 200


@app.route('/hello')
def hello():
    return "hello", 200


def ping_once(base_url: str) -> bool:
    try:
        requests.get(f"{base_url.rstrip('/')}/hello", timeout=10)
        return True
    except requests.RequestException as e:
        logging.warning(f"⚠️ Uptime: Ping failed: {e}")
        return False


def ping_self():
    """Periodically ping /hello so free hosting tiers do not put the app to sleep"""
    url = config.BASE_URL
    if not url:
        logging.info("Uptime: BASE_URL not set. Skipping self-ping.")
        return

    # Wait for server to start
    time.sleep(10)
    logging.info(f"🚀 Uptime: Starting self-pinging loop for {url}")
    while True:
        if ping_once(url):
            logging.debug("🔄 Server active")
        time.sleep(PING_INTERVAL)


def run():
    # Use 0.0.0.0 to be accessible externally
    app.run(host='0.0.0.0', port=config.PORT)


def start_server():
    """Start the health-check server and self-ping thread"""
    server_thread = threading.Thread(target=run, daemon=True)
    server_thread.start()

    ping_thread = threading.Thread(target=ping_self, daemon=True)
    ping_thread.start()

    logging.info(f"✅ Health-check server started on port {config.PORT}")
