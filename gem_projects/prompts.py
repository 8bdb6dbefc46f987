"""
Prompt scaffolding injected into Gemini threads, and its removal.

Folder chats seed a thread with the folder's indexed content before the first
question. When such a thread is indexed later, the scaffolding must not be
captured as if it were conversation.
"""

CONTEXT_HEADER = "[CONTEXT - Folder Contents]"
QUERY_HEADER = "[USER QUERY]"
PERSONA_HEADER = "[WORKSPACE INSTRUCTIONS]"
FOLDER_TREE_PREFIX = "CONTEXT FROM FOLDER TREE:"

_SCAFFOLD_HEADERS = (CONTEXT_HEADER, PERSONA_HEADER, FOLDER_TREE_PREFIX)


def build_context_prompt(text, context=None, persona=None):
    """Wraps the user's text with folder context and workspace persona, if any."""
    if not context and not persona:
        return text
    parts = []
    if persona:
        parts.append(f"{PERSONA_HEADER}\n{persona.strip()}")
    if context:
        parts.append(f"{CONTEXT_HEADER}\n{context.strip()}")
    parts.append(f"{QUERY_HEADER}\n{text}")
    return "\n\n".join(parts)


def build_folder_context(folder, chats):
    """
    Concatenates the indexed content of every chat in `chats` (already
    resolved to the folder subtree) under a folder header.
    Chats without indexed content are skipped.
    """
    lines = [f'{FOLDER_TREE_PREFIX} "{folder.get("name", "")}" ({len(chats)} chats)\n']
    for chat in chats:
        content = chat.get("content")
        if content:
            lines.append(f"--- START CHAT: {chat.get('title', '')} ---\n{content}\n--- END CHAT ---\n")
    return "\n".join(lines)


def strip_context(text):
    """
    Removes previously injected scaffolding from a turn's text.
    A scaffolded turn keeps only its user query; a turn that is nothing but
    scaffolding becomes empty.
    """
    if not text:
        return ""
    if not any(header in text for header in _SCAFFOLD_HEADERS):
        return text
    if QUERY_HEADER in text:
        return text.split(QUERY_HEADER, 1)[1].strip()
    return ""
