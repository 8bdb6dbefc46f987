# ==============================================================================
# Utility Functions
# ==============================================================================
import os
import re
import time

CHAT_ID_RE = re.compile(r"/app/([a-zA-Z0-9_-]+)")


def ensure_directory(path):
    if not os.path.exists(path):
        os.makedirs(path)


def extract_chat_id(url):
    """
    Extracts the Chat ID from the URL.
    Format: https://gemini.google.com/app/abcd12345
    """
    if not url:
        return None
    match = CHAT_ID_RE.search(url)
    if match:
        return match.group(1)
    return None


def chat_url(app_url, chat_id, indexing=False):
    url = f"{app_url}/{chat_id}"
    return f"{url}?ez_idx=true" if indexing else url


def now_ms():
    return int(time.time() * 1000)
