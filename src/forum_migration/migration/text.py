"""phpBB text conversion.

phpBB stores post text as BBCode with a per-post uid appended to every tag
(``[b:1x2y3z]``), HTML comments around smilies and autolinked URLs, and HTML
entities. TextProcessor turns that into Markdown the target can render.
"""

import html
import re

# <!-- s:) --><img src="{SMILIES_PATH}/icon_smile.gif" alt=":)" title="Smile" /><!-- s:) -->
_SMILEY = re.compile(r"<!-- s(\S+) --><img [^>]*/?><!-- s\S+ -->")
# <!-- m --><a class="postlink" href="http://example.com">http://example.com</a><!-- m -->
_MAGIC_LINK = re.compile(r'<!-- [lmwe] --><a [^>]*href="([^"]+)"[^>]*>(.*?)</a><!-- [lmwe] -->')

_SIMPLE_TAGS = [
    (re.compile(r"\[b\](.*?)\[/b\]", re.S | re.I), r"**\1**"),
    (re.compile(r"\[i\](.*?)\[/i\]", re.S | re.I), r"*\1*"),
    (re.compile(r"\[u\](.*?)\[/u\]", re.S | re.I), r"\1"),
    (re.compile(r"\[s\](.*?)\[/s\]", re.S | re.I), r"~~\1~~"),
    (re.compile(r"\[img\](.*?)\[/img\]", re.S | re.I), r"![](\1)"),
    (re.compile(r"\[url=([^\]]+)\](.*?)\[/url\]", re.S | re.I), r"[\2](\1)"),
    (re.compile(r"\[url\](.*?)\[/url\]", re.S | re.I), r"<\1>"),
    (re.compile(r"\[email=([^\]]+)\](.*?)\[/email\]", re.S | re.I), r"[\2](mailto:\1)"),
    (re.compile(r"\[email\](.*?)\[/email\]", re.S | re.I), r"<\1>"),
    (re.compile(r"\[(?:color|size)=[^\]]*\](.*?)\[/(?:color|size)\]", re.S | re.I), r"\1"),
]
_CODE = re.compile(r"\[code\](.*?)\[/code\]", re.S | re.I)
# Bodies may not open another quote, so the innermost quotes convert first
_QUOTE_NAMED = re.compile(r'\[quote="?([^\]"]+)"?\]((?:(?!\[quote).)*?)\[/quote\]', re.S | re.I)
_QUOTE = re.compile(r"\[quote\]((?:(?!\[quote).)*?)\[/quote\]", re.S | re.I)
_LIST = re.compile(r"\[list(?:=[^\]]*)?\](.*?)\[/list(?::[ou])?\]", re.S | re.I)
_LIST_ITEM = re.compile(r"\[\*\]\s*")


def _quote_block(body: str) -> str:
    return "\n".join(f"> {line}" if line else ">" for line in body.strip().splitlines())


class TextProcessor:
    """Convert phpBB post text to Markdown."""

    def process_raw_text(self, raw: str | None, bbcode_uid: str | None = None) -> str:
        """
        Convert stored phpBB text to Markdown.

        Args:
            raw: Text as stored in the phpBB database
            bbcode_uid: The row's bbcode_uid, stripped from every tag

        Returns:
            Markdown text
        """
        if not raw:
            return ""

        text = raw
        if bbcode_uid:
            text = text.replace(f":{bbcode_uid}", "")
        # Drop explicit list item closers ([/*:m])
        text = re.sub(r"\[\/\*(?::m)?\]", "", text)

        text = _SMILEY.sub(lambda m: f" {m.group(1)} ", text)
        text = _MAGIC_LINK.sub(r"\1", text)
        text = text.replace("<br />", "\n")

        text = _CODE.sub(lambda m: "\n```\n" + m.group(1).strip() + "\n```\n", text)
        # Repeat until nested quotes are all converted
        while True:
            replaced = _QUOTE_NAMED.sub(
                lambda m: "\n" + _quote_block(m.group(1) + " wrote:\n" + m.group(2)) + "\n", text
            )
            replaced = _QUOTE.sub(lambda m: "\n" + _quote_block(m.group(1)) + "\n", replaced)
            if replaced == text:
                break
            text = replaced

        text = _LIST.sub(
            lambda m: "\n"
            + "\n".join(
                f"- {item.strip()}"
                for item in _LIST_ITEM.split(m.group(1))
                if item.strip()
            )
            + "\n",
            text,
        )

        for pattern, replacement in _SIMPLE_TAGS:
            text = pattern.sub(replacement, text)

        text = html.unescape(text)
        return re.sub(r"\n{3,}", "\n\n", text).strip()
