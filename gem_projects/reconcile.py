"""
ID Reconciliation.

Chats dragged in before their real Gemini id is known get a surrogate id
derived from their title. Once a page reveals the real id, `migrate` folds
the surrogate record into the real one and rewrites every folder reference.
"""
import hashlib
import logging
import re

from .errors import MigrationSkipped
from .utils import chat_url

log = logging.getLogger(__name__)

SURROGATE_PREFIX = "chat_"
_PUNCT_RE = re.compile(r"[^\w\s]")


def normalize_title(title):
    """Lowercase, punctuation stripped, whitespace collapsed."""
    text = _PUNCT_RE.sub("", (title or "").lower())
    return " ".join(text.split())


def surrogate_id(title):
    """Deterministic surrogate id: same title, same id."""
    digest = hashlib.sha256(normalize_title(title).encode('utf-8')).hexdigest()
    return f"{SURROGATE_PREFIX}{digest[:12]}"


def is_surrogate(identifier):
    return bool(identifier) and identifier.startswith(SURROGATE_PREFIX)


def titles_match(a, b, min_prefix=5, max_prefix=20):
    """
    Fuzzy title equality: exact after normalization, containment, or a
    shared prefix of min(len_a, len_b, max_prefix) characters when that
    prefix is at least min_prefix long.
    """
    na, nb = normalize_title(a), normalize_title(b)
    if not na or not nb:
        return False
    if na == nb:
        return True
    shorter = min(len(na), len(nb))
    if shorter >= min_prefix and (na in nb or nb in na):
        return True
    n = min(shorter, max_prefix)
    return n >= min_prefix and na[:n] == nb[:n]


def find_chat_by_title(chats, title, min_prefix=5, max_prefix=20):
    """Id of the stored chat whose title matches, exact matches first."""
    wanted = normalize_title(title)
    if not wanted:
        return None
    for chat_id, chat in chats.items():
        if normalize_title(chat.get("title")) == wanted:
            return chat_id
    for chat_id, chat in chats.items():
        if titles_match(chat.get("title"), title, min_prefix, max_prefix):
            return chat_id
    return None


class Reconciler:
    def __init__(self, writer, app_url="https://gemini.google.com/app", min_prefix=5, max_prefix=20):
        self.writer = writer
        self.app_url = app_url
        self.min_prefix = min_prefix
        self.max_prefix = max_prefix
        self.aliases = {}

    @classmethod
    def from_settings(cls, writer, settings):
        return cls(writer, settings.app_url, settings.title_min_prefix, settings.title_max_prefix)

    def resolve(self, identifier):
        """Real id for a migrated surrogate; any other id unchanged."""
        seen = set()
        while identifier in self.aliases and identifier not in seen:
            seen.add(identifier)
            identifier = self.aliases[identifier]
        return identifier

    async def match_known(self, surrogate, title):
        """
        Real id of an already indexed chat whose title matches, folding the
        surrogate into it. None when no stored real chat matches.
        """
        snapshot = await self.writer.get()
        known = {cid: chat for cid, chat in snapshot["chats"].items() if not is_surrogate(cid)}
        real = find_chat_by_title(known, title, self.min_prefix, self.max_prefix)
        if real is None:
            return None
        log.info("[Reconcile] '%s' matches stored chat %s", title, real)
        await self.migrate(surrogate, real, title)
        self.aliases[surrogate] = real
        return real

    async def migrate(self, surrogate, real, title=""):
        """
        Folds `surrogate` into `real` in one serialized store mutation.
        Returns False when there is no surrogate record to migrate.
        """
        if not surrogate or not real or surrogate == real:
            return False

        def apply(snapshot):
            chats = snapshot["chats"]
            if surrogate not in chats:
                raise MigrationSkipped(surrogate)

            old = chats.pop(surrogate)
            existing = chats.get(real)
            merged = {**old, "id": real, "url": chat_url(self.app_url, real)}
            if title and not merged.get("title"):
                merged["title"] = title
            if existing:
                # The real record is presumed fresher.
                merged.update({k: v for k, v in existing.items() if v not in (None, "")})
                tags = sorted(set(old.get("tags") or []) | set(existing.get("tags") or []))
                if tags:
                    merged["tags"] = tags
                if old.get("pinned") or existing.get("pinned"):
                    merged["pinned"] = True
            chats[real] = merged

            for folder in snapshot["folders"]:
                ids = folder.get("chatIds", [])
                if surrogate not in ids:
                    continue
                rewritten = []
                for cid in ids:
                    if cid == surrogate:
                        cid = real
                    if cid == real and real in rewritten:
                        continue
                    rewritten.append(cid)
                folder["chatIds"] = rewritten

            return {"chats": chats, "folders": snapshot["folders"]}

        try:
            await self.writer.mutate(apply)
        except MigrationSkipped:
            log.debug("[Reconcile] No record for %s, skipping", surrogate)
            return False

        self.aliases[surrogate] = real
        log.info("[Reconcile] Migrated %s -> %s (%s)", surrogate, real, title)
        return True
