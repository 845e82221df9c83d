"""Markdown parsing pipeline.

Turns Markdown text into a small block tree (headings, paragraphs, code,
lists, quotes) and derives the structured fields used for indexing: title,
description, headings with slugs, code blocks and topics.

Nothing in here raises on malformed input; bad front matter or unclosed
fences degrade to best-guess output.
"""

import logging
import re
import tomllib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .models import CodeBlock, Heading, ParsedMarkup

logger = logging.getLogger(__name__)

FRONTMATTER_DELIMITERS = {
    "---": "yaml",
    "+++": "toml",
}

ATX_HEADING_RE = re.compile(r'^\s{0,3}(#{1,6})\s+(.+?)(?:\s+#+)?\s*$')
SETEXT_UNDERLINE_RE = re.compile(r'^\s{0,3}(=+|-+)\s*$')
FENCE_OPEN_RE = re.compile(r'^\s{0,3}(`{3,}|~{3,})\s*([^\s`]*)\s*(.*)$')
THEMATIC_BREAK_RE = re.compile(r'^\s{0,3}([-*_])(?:\s*\1){2,}\s*$')
LIST_ITEM_RE = re.compile(r'^\s{0,3}(?:[-*+]|\d{1,9}[.)])\s+')
BLOCKQUOTE_RE = re.compile(r'^\s{0,3}>\s?')

# Lightweight extraction paths that work on raw text
CODE_FENCE_RE = re.compile(r'```(\w+)?\n(.*?)\n```', re.DOTALL)
TOC_HEADING_RE = re.compile(r'^(#{1,6})\s+(.+)$', re.MULTILINE)
INLINE_LINK_RE = re.compile(r'(?<!!)\[([^\]]+)\]\(([^)\s]+)(?:\s+"[^"]*")?\)')

# Inline markup stripped when computing plain heading/paragraph text
_IMAGE_RE = re.compile(r'!\[([^\]]*)\]\([^)]*\)')
_LINK_RE = re.compile(r'\[([^\]]+)\]\([^)]*\)')
_EMPHASIS_RE = re.compile(r'(\*\*|__|~~)(.+?)\1')
_SINGLE_EMPHASIS_RE = re.compile(r'(?<!\w)[*_](\S(?:.*?\S)?)[*_](?!\w)')
_HTML_TAG_RE = re.compile(r'</?[a-zA-Z][^>]*>')

CONTEXT_WINDOW = 200
CHUNK_HEADING_THRESHOLD = 500
MAX_TOPICS = 10


@dataclass
class MarkupNode:
    """A block-level node of the parsed document."""
    type: str  # root, heading, paragraph, code, list, blockquote
    text: str = ""
    level: int = 0
    language: Optional[str] = None
    meta: Optional[str] = None
    children: List['MarkupNode'] = field(default_factory=list)


def slugify(text: str) -> str:
    """Convert heading text to a URL-friendly slug.

    Idempotent: ``slugify(slugify(t)) == slugify(t)``.
    """
    slug = text.lower().strip()
    slug = re.sub(r'[^\w\s-]', '', slug)
    slug = re.sub(r'\s+', '-', slug)
    slug = re.sub(r'-+', '-', slug)
    return slug.strip('-')


def plain_text(markdown: str) -> str:
    """Strip inline Markdown markup, keeping the readable text."""
    text = _IMAGE_RE.sub(r'\1', markdown)
    text = _LINK_RE.sub(r'\1', text)
    text = text.replace('`', '')
    text = _EMPHASIS_RE.sub(r'\2', text)
    text = _SINGLE_EMPHASIS_RE.sub(r'\1', text)
    text = _HTML_TAG_RE.sub('', text)
    return text.strip()


def split_frontmatter(content: str) -> Tuple[Optional[Dict[str, Any]], str]:
    """Split a leading YAML (``---``) or TOML (``+++``) front matter block.

    Returns:
        Tuple of (frontmatter or None, remaining body)
    """
    stripped = content.lstrip('\ufeff')
    lines = stripped.split('\n')
    if not lines:
        return None, content

    delimiter = lines[0].strip()
    dialect = FRONTMATTER_DELIMITERS.get(delimiter)
    if not dialect:
        return None, content

    for end, line in enumerate(lines[1:], start=1):
        if line.strip() == delimiter:
            break
    else:
        # No closing delimiter: not front matter
        return None, content

    raw = '\n'.join(lines[1:end])
    body = '\n'.join(lines[end + 1:])

    try:
        if dialect == "yaml":
            data = yaml.safe_load(raw)
        else:
            data = tomllib.loads(raw)
    except (yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        logger.debug(f"Ignoring malformed {dialect} front matter: {e}")
        return None, body

    if not isinstance(data, dict):
        return None, body
    return data, body


class MarkdownParser:
    """Parses Markdown content and extracts structured data."""

    def parse(self, content: str) -> ParsedMarkup:
        """Parse Markdown content.

        Args:
            content: Raw Markdown, optionally starting with front matter

        Returns:
            ParsedMarkup with the original content and derived fields
        """
        frontmatter, body = split_frontmatter(content)
        tree = self.build_tree(body)

        headings = self._extract_headings(tree)
        code_blocks = self._extract_code_blocks(tree)

        return ParsedMarkup(
            content=content,
            title=headings[0].text if headings else None,
            description=self._extract_description(tree),
            headings=headings,
            code_blocks=code_blocks,
            topics=self._extract_topics(headings),
            frontmatter=frontmatter,
        )

    def build_tree(self, body: str) -> MarkupNode:
        """Build the block tree for a Markdown body (front matter already removed)."""
        root = MarkupNode(type="root")
        lines = body.split('\n')
        buffer: List[str] = []
        buffer_type = None

        def flush():
            nonlocal buffer, buffer_type
            if buffer:
                text = '\n'.join(buffer)
                if buffer_type == "paragraph":
                    text = plain_text(' '.join(line.strip() for line in buffer))
                root.children.append(MarkupNode(type=buffer_type, text=text))
            buffer = []
            buffer_type = None

        i = 0
        while i < len(lines):
            line = lines[i]

            fence = FENCE_OPEN_RE.match(line)
            if fence:
                flush()
                marker, language, meta = fence.group(1), fence.group(2), fence.group(3)
                code_lines = []
                i += 1
                while i < len(lines):
                    closing = lines[i].strip()
                    if closing.startswith(marker[0] * len(marker)) and not closing.strip(marker[0]):
                        break
                    code_lines.append(lines[i])
                    i += 1
                root.children.append(MarkupNode(
                    type="code",
                    text='\n'.join(code_lines),
                    language=language or None,
                    meta=meta.strip() or None,
                ))
                i += 1
                continue

            if not line.strip():
                flush()
                i += 1
                continue

            heading = ATX_HEADING_RE.match(line)
            if heading:
                flush()
                root.children.append(MarkupNode(
                    type="heading",
                    level=len(heading.group(1)),
                    text=plain_text(heading.group(2)),
                ))
                i += 1
                continue

            underline = SETEXT_UNDERLINE_RE.match(line)
            if underline and buffer_type == "paragraph":
                text = plain_text(' '.join(l.strip() for l in buffer))
                level = 1 if underline.group(1).startswith('=') else 2
                buffer = []
                buffer_type = None
                root.children.append(MarkupNode(type="heading", level=level, text=text))
                i += 1
                continue

            if THEMATIC_BREAK_RE.match(line):
                flush()
                i += 1
                continue

            if LIST_ITEM_RE.match(line):
                block_type = "list"
            elif BLOCKQUOTE_RE.match(line):
                block_type = "blockquote"
            else:
                # Lazy continuation lines stay in the open list/quote
                block_type = buffer_type or "paragraph"

            if buffer_type and block_type != buffer_type:
                flush()
            buffer_type = block_type
            buffer.append(line)
            i += 1

        flush()
        return root

    def _extract_headings(self, tree: MarkupNode) -> List[Heading]:
        headings = []

        def traverse(node: MarkupNode):
            if node.type == "heading":
                headings.append(Heading(level=node.level, text=node.text, slug=slugify(node.text)))
            for child in node.children:
                traverse(child)

        traverse(tree)
        return headings

    def _extract_code_blocks(self, tree: MarkupNode) -> List[CodeBlock]:
        blocks = []
        context = ""
        for node in tree.children:
            if node.type == "heading":
                context = node.text
            elif node.type == "code":
                blocks.append(CodeBlock(
                    language=node.language or "text",
                    code=node.text,
                    meta=node.meta,
                    context=context,
                ))
        return blocks

    def _extract_description(self, tree: MarkupNode) -> Optional[str]:
        """First paragraph after the first heading."""
        found_heading = False
        for node in tree.children:
            if node.type == "heading":
                found_heading = True
                continue
            if found_heading and node.type == "paragraph":
                return node.text
        return None

    def _extract_topics(self, headings: List[Heading]) -> List[str]:
        topics = [h.text.lower() for h in headings if h.level <= 3]
        return [t for t in topics if len(t) > 3][:MAX_TOPICS]

    def extract_code_examples(self, content: str) -> List[Dict[str, str]]:
        """Extract fenced code blocks with the line of text right before them.

        Works on raw text without building the tree, for callers that only
        need code snippets.
        """
        examples = []
        for match in CODE_FENCE_RE.finditer(content):
            start = max(0, match.start() - CONTEXT_WINDOW)
            preceding = content[start:match.start()].strip()
            examples.append({
                "language": match.group(1) or "text",
                "code": match.group(2).strip(),
                "context": preceding.split('\n')[-1],
            })
        return examples

    def chunk_by_headings(self, content: str, max_chunk_length: int = 2000) -> List[str]:
        """Split Markdown into chunks along heading boundaries.

        A new chunk starts at a heading line once the current chunk is over
        500 characters, or when adding the next line would exceed
        ``max_chunk_length``. The line that triggers the split opens the
        next chunk.
        """
        chunks = []
        current = ""

        for line in content.split('\n'):
            at_heading = line.startswith('#') and len(current) > CHUNK_HEADING_THRESHOLD
            too_long = len(current) + len(line) + 1 > max_chunk_length
            if current and (at_heading or too_long):
                if current.strip():
                    chunks.append(current.strip())
                current = ""
            current += line + '\n'

        if current.strip():
            chunks.append(current.strip())

        return chunks

    def extract_table_of_contents(self, content: str) -> List[Heading]:
        """Scan ATX headings with a regex, without building the tree."""
        toc = []
        for match in TOC_HEADING_RE.finditer(content):
            text = match.group(2).strip()
            toc.append(Heading(level=len(match.group(1)), text=text, slug=slugify(text)))
        return toc

    def extract_links(self, content: str) -> List[Dict[str, str]]:
        """Inline ``[text](url)`` links in document order, deduplicated by URL."""
        seen = set()
        links = []
        for match in INLINE_LINK_RE.finditer(content):
            url = match.group(2)
            if url in seen:
                continue
            seen.add(url)
            links.append({"text": match.group(1), "url": url})
        return links
