# ==============================================================================
# gem-projects - Content Extractor
# Requires: pip install beautifulsoup4
# ==============================================================================
"""
Turns a settled Gemini page into cleaned, role-tagged conversation turns.

Strategies, most specific first:
  1. role-tagged turn containers (data attribute or class identifiers)
  2. the main region with UI chrome removed, kept as one model block
  3. nothing found -> None
"""

import logging
import re
from dataclasses import dataclass, field

from bs4 import BeautifulSoup, Comment

from .prompts import strip_context

log = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n...[Truncated]"
ROLE_HEADERS = {"user": "## 👤 User", "model": "## 🤖 Gemini"}
TURN_SEPARATOR = "\n\n---\n\n"


@dataclass
class Turn:
    role: str  # 'user' | 'model'
    text: str


@dataclass
class ExtractedContent:
    text: str
    turn_count: int
    turns: list = field(default_factory=list)
    truncated: bool = False


# ==============================================================================
# Cleaning & Markdown Conversion
# ==============================================================================

def _drop(tags):
    for tag in tags:
        if not tag.decomposed:
            tag.decompose()


def clean_html(element, selectors):
    """
    Deep Cleaning: Removes UI noise using the configured selectors.
    """
    for cls in selectors.get('noise_classes', []):
        _drop(element.find_all(class_=re.compile(cls)))

    for tag_name in selectors.get('noise_tags', []):
        _drop(element.find_all(tag_name))

    tooltip_pattern = selectors.get('tooltip_pattern', 'tooltip')
    _drop(element.find_all(class_=re.compile(tooltip_pattern)))

    return element


def traverse_dom(element, indent_level=0):
    """
    Recursive DOM traverser that converts HTML elements to Markdown.
    """
    if isinstance(element, Comment):
        return ""

    if element.name is None:
        text = element.string
        if not text:
            return ""
        return text.strip()

    md_output = ""
    tag = element.name.lower()

    if tag in ['p', 'div', 'section', 'article']:
        for child in element.children:
            child_text = traverse_dom(child, indent_level)
            if child_text:
                if md_output and not md_output.endswith(('\n', ' ')):
                    md_output += " "
                md_output += child_text
        md_output = md_output.strip() + "\n\n"

    elif tag == 'br':
        md_output += "\n"

    elif tag in ['ul', 'ol']:
        for i, child in enumerate(element.find_all('li', recursive=False)):
            prefix = "* " if tag == 'ul' else f"{i+1}. "
            content = traverse_dom(child, indent_level + 1).strip()
            md_output += f"{'  ' * indent_level}{prefix}{content}\n"
        md_output += "\n"

    elif tag == 'li':
        md_output += " ".join(
            t for t in (traverse_dom(child, indent_level).strip() for child in element.children) if t
        )

    elif tag in ['h1', 'h2', 'h3', 'h4', 'h5', 'h6']:
        level = int(tag[1])
        content = " ".join(traverse_dom(child).strip() for child in element.children)
        md_output += f"{'#' * level} {content.strip()}\n\n"

    elif tag == 'pre':
        code_content = element.get_text()
        lang = ""
        for c in element.get('class', []):
            if 'language-' in c:
                lang = c.replace('language-', '')
        md_output += f"\n```{lang}\n{code_content.strip()}\n```\n\n"

    elif tag == 'code':
        if element.parent is None or element.parent.name != 'pre':
            md_output += f"`{element.get_text().strip()}`"

    elif tag in ['b', 'strong']:
        content = "".join(traverse_dom(child) for child in element.children)
        md_output += f"**{content.strip()}**"

    elif tag in ['i', 'em']:
        content = "".join(traverse_dom(child) for child in element.children)
        md_output += f"*{content.strip()}*"

    elif tag == 'a':
        text = "".join(traverse_dom(child) for child in element.children)
        href = element.get('href', '')
        md_output += f"[{text.strip()}]({href})"

    elif tag == 'img':
        src = element.get('src')
        alt = element.get('alt', 'Image')
        if src and src.startswith('http'):
            md_output += f"![{alt}]({src})\n"

    else:
        content = ""
        for child in element.children:
            child_text = traverse_dom(child, indent_level)
            if child_text:
                if content and not content.endswith(('\n', ' ')):
                    content += " "
                content += child_text
        md_output += content

    return md_output


def _tidy(text):
    text = re.sub(r"[ \t]+\n", "\n", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


# ==============================================================================
# Extractor
# ==============================================================================

class ContentExtractor:
    def __init__(self, selectors=None, boilerplate=None, max_chars=100_000,
                 dedupe_prefix=100, min_turn_length=5, min_fallback_length=50):
        self.selectors = selectors or {}
        self.max_chars = max_chars
        self.dedupe_prefix = dedupe_prefix
        self.min_turn_length = min_turn_length
        self.min_fallback_length = min_fallback_length

        self._user_ids = self.selectors.get('user_identifiers', [])
        self._model_ids = self.selectors.get('model_identifiers', [])
        self._role_attr = self.selectors.get('role_attribute', 'data-message-author-role')

        words = [re.escape(w) for w in (boilerplate or [])]
        self._boilerplate_re = re.compile(rf"^\s*(?:{'|'.join(words)})\s*$", re.IGNORECASE) if words else None
        self._pager_re = re.compile(r"^\s*[0-9]+/[0-9]+\s*$")

    @classmethod
    def from_settings(cls, settings):
        return cls(
            selectors=settings.selectors,
            boilerplate=settings.boilerplate,
            max_chars=settings.extract_max_chars,
            dedupe_prefix=settings.extract_dedupe_prefix,
            min_turn_length=settings.extract_min_turn_length,
            min_fallback_length=settings.extract_min_fallback_length,
        )

    def extract(self, html):
        """Returns ExtractedContent, or None when the page holds no conversation text."""
        soup = BeautifulSoup(html or "", 'html.parser')

        turns = self._role_turns(soup)
        if not turns:
            log.debug("[Extract] No turn containers, falling back to main region")
            turns = self._fallback_turns(soup)

        if not turns:
            log.debug("[Extract] No content found")
            return None

        content = self._build(turns)
        log.debug("[Extract] %d turns, %d chars", content.turn_count, len(content.text))
        return content

    def last_response(self, html, prompt=None):
        """
        The model answer following the latest user turn that matches `prompt`.
        None until that user turn and its answer have rendered; an older answer
        on the page is never returned in its place. Without a prompt, the last
        model turn on the page.
        """
        soup = BeautifulSoup(html or "", 'html.parser')
        turns = self._role_turns(soup, dedupe=False)

        anchor = self.signature(strip_context(prompt) or prompt)[:50] if prompt else ""
        if anchor:
            for i in range(len(turns) - 1, -1, -1):
                if turns[i].role == 'user' and anchor in self.signature(turns[i].text):
                    for turn in turns[i + 1:]:
                        if turn.role == 'model':
                            return turn.text
                    return None
            return None

        models = [t.text for t in turns if t.role == 'model']
        return models[-1] if models else None

    def page_title(self, html):
        """Title shown in the header of the open conversation, or None."""
        soup = BeautifulSoup(html or "", 'html.parser')
        for sel in self.selectors.get('conversation_title', []):
            el = soup.select_one(sel)
            if el is not None and el.get_text(strip=True):
                return el.get_text(" ", strip=True)
        return None

    def signature(self, text):
        """Normalized-prefix signature used to spot the same turn rendered twice."""
        return " ".join(text.lower().split())[:self.dedupe_prefix]

    # --------------------------------------------------------------------------

    def _role_of(self, element):
        attr = element.get(self._role_attr)
        if attr in ('user', 'model'):
            return attr
        class_str = " ".join(element.get('class', []))
        if not class_str:
            return None
        if any(uid in class_str for uid in self._user_ids):
            return 'user'
        if any(mid in class_str for mid in self._model_ids):
            return 'model'
        return None

    def _role_turns(self, soup, dedupe=True):
        containers = [el for el in soup.find_all(True) if self._role_of(el)]
        if not containers:
            return []

        # Only outermost containers; nested ones are part of their parent turn.
        marked = {id(el) for el in containers}
        top_level = [el for el in containers if not any(id(p) in marked for p in el.parents)]
        log.debug("[Extract] %d containers, %d top-level", len(containers), len(top_level))

        turns = []
        seen = set()
        for el in top_level:
            role = self._role_of(el)
            clean_html(el, self.selectors)
            text = strip_context(_tidy(traverse_dom(el)))
            if len(text) < self.min_turn_length:
                continue
            if dedupe:
                key = self.signature(text)
                if key in seen:
                    log.debug("[Extract] Skipping duplicate %s turn", role)
                    continue
                seen.add(key)
            turns.append(Turn(role, text))
        return turns

    def _fallback_turns(self, soup):
        region = None
        for sel in self.selectors.get('main_region', ['main']):
            region = soup.select_one(sel)
            if region is not None:
                break
        if region is None:
            return []

        for sel in self.selectors.get('chrome_elements', []):
            _drop(region.select(sel))

        lines = []
        for line in region.get_text("\n").splitlines():
            if self._boilerplate_re is not None and self._boilerplate_re.match(line):
                continue
            if self._pager_re.match(line):
                continue
            lines.append(line.strip())

        text = strip_context(_tidy("\n".join(lines)))
        if len(text) <= self.min_fallback_length:
            return []
        # Roles are unknown here; the block is treated as one model response.
        return [Turn('model', text)]

    def _build(self, turns):
        text = TURN_SEPARATOR.join(f"{ROLE_HEADERS[t.role]}\n{t.text}" for t in turns)
        truncated = len(text) > self.max_chars
        if truncated:
            log.info("[Extract] Truncating %d chars to %d", len(text), self.max_chars)
            text = text[:self.max_chars] + TRUNCATION_MARKER
        return ExtractedContent(text=text, turn_count=len(turns), turns=turns, truncated=truncated)
