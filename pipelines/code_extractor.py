"""Code example extraction and analysis.

Scans documentation text for fenced code blocks and scores each snippet
with table-driven heuristics (difficulty, complexity). All scoring
functions are pure so they can be tested without parsing or network access.
"""

import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .models import CodeAnalysis, Complexity, Difficulty, ExtractedCodeExample

logger = logging.getLogger(__name__)

CODE_BLOCK_RE = re.compile(r'```(\w+)?\n(.*?)\n```', re.DOTALL)

MIN_SNIPPET_LENGTH = 20
CONTEXT_WINDOW = 300
MAX_TOPICS = 8

JS_FAMILY = {"js", "javascript", "jsx", "mjs", "cjs", "ts", "typescript", "tsx"}
PY_FAMILY = {"py", "python", "python3"}

API_KEYWORDS = ("fetch", "async", "await", "promise", "callback", "event", "handler")

DECLARATION_RE = re.compile(r'\b(?:function|class|const|let|var|def)\s+(\w+)')
HEADING_LINE_RE = re.compile(r'^\s*#+\s+(.+)$', re.MULTILINE)
SLASH_COMMENT_RE = re.compile(r'//\s*(.+)$', re.MULTILINE)
HASH_COMMENT_RE = re.compile(r'(?:^|\s)#\s+(.+)$', re.MULTILINE)
DOCSTRING_RE = re.compile(r'"""\s*(.+?)\s*"""')

# (name, weight, predicate)
Rule = Tuple[str, int, Callable[[str], bool]]


def _matches(pattern: str, flags: int = 0) -> Callable[[str], bool]:
    compiled = re.compile(pattern, flags)
    return lambda code: compiled.search(code) is not None


DIFFICULTY_RULES: Sequence[Rule] = (
    ("async", 1, _matches(r'async|await')),
    ("promise", 1, _matches(r'Promise')),
    ("class", 1, _matches(r'class ')),
    ("interface", 1, _matches(r'interface ')),
    ("generics", 2, _matches(r'generics|<')),
    ("recursion", 2, _matches(r'recursion')),
    ("map_reduce", 1, _matches(r'reduce|map')),
    ("nesting", 1, _matches(r'\{[\s\S]{50,}\}')),
)

COMPLEXITY_RULES: Sequence[Rule] = (
    ("over_50_lines", 1, lambda code: len(code.split('\n')) > 50),
    ("over_100_lines", 1, lambda code: len(code.split('\n')) > 100),
    ("async", 1, _matches(r'async|await')),
    ("promise", 1, _matches(r'Promise')),
    ("then_chain", 1, _matches(r'\.then\s*\(')),
    ("try_catch", 1, lambda code: "try" in code and ("catch" in code or "except" in code)),
    ("comprehension", 1, _matches(r'\[.*for.*in.*\]')),
    ("brace_density", 1, lambda code: code.count('{') > 10),
)

DIFFICULTY_TIERS = (
    (0, Difficulty.BEGINNER),
    (3, Difficulty.INTERMEDIATE),
)

COMPLEXITY_TIERS = (
    (1, Complexity.SIMPLE),
    (3, Complexity.MODERATE),
)


def score(code: str, rules: Sequence[Rule]) -> int:
    """Sum the weights of every rule that fires on ``code``."""
    return sum(weight for _, weight, predicate in rules if predicate(code))


def _tier(value: int, tiers, default):
    for upper_bound, tier in tiers:
        if value <= upper_bound:
            return tier
    return default


def calculate_difficulty(code: str) -> Difficulty:
    """Score 0 is beginner, 1-3 intermediate, 4 or more advanced."""
    return _tier(score(code, DIFFICULTY_RULES), DIFFICULTY_TIERS, Difficulty.ADVANCED)


def calculate_complexity(code: str) -> Complexity:
    """Score 0-1 is simple, 2-3 moderate, 4 or more complex."""
    return _tier(score(code, COMPLEXITY_RULES), COMPLEXITY_TIERS, Complexity.COMPLEX)


def normalize_language(language: Optional[str]) -> str:
    """Map language aliases onto a family name (``javascript``, ``python``)."""
    lang = (language or "").lower()
    if lang in JS_FAMILY:
        return "javascript"
    if lang in PY_FAMILY:
        return "python"
    return lang or "text"


def _unique(values) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))


class CodeExtractor:
    """Extracts and analyzes code examples from documentation."""

    def extract_examples(self, content: str, language: Optional[str] = None) -> List[ExtractedCodeExample]:
        """Extract code examples from mixed Markdown content.

        Args:
            content: Text containing fenced code blocks
            language: Language to assume for blocks without an info string

        Returns:
            One example per fenced block of at least 20 non-blank characters
        """
        examples = []

        for match in CODE_BLOCK_RE.finditer(content):
            code = match.group(2)
            if len(code.strip()) < MIN_SNIPPET_LENGTH:
                continue

            block_language = match.group(1) or language or "text"
            preceding = content[max(0, match.start() - CONTEXT_WINDOW):match.start()]
            context = self._extract_context(preceding)

            examples.append(ExtractedCodeExample(
                language=block_language,
                code=code.strip(),
                description=self._generate_description(code, context, block_language),
                topics=self._extract_topics(code, preceding),
                context=context,
                difficulty=calculate_difficulty(code),
            ))

        logger.debug(f"Extracted {len(examples)} code examples")
        return examples

    def _extract_context(self, text: str) -> str:
        """Nearest heading line before the block, else the last non-empty line."""
        lines = [line.strip() for line in text.split('\n')]
        for line in reversed(lines):
            if line.startswith('#'):
                return line
        for line in reversed(lines):
            if line:
                return line
        return ""

    def _generate_description(self, code: str, context: str, language: str) -> str:
        comment = SLASH_COMMENT_RE.search(code)
        if not comment and normalize_language(language) == "python":
            comment = HASH_COMMENT_RE.search(code)
        if comment:
            return comment.group(1).strip()

        docstring = DOCSTRING_RE.search(code)
        if docstring:
            return docstring.group(1)

        if context:
            return re.sub(r'^#+\s*', '', context)

        return "Code example"

    def _extract_topics(self, code: str, preceding: str) -> List[str]:
        topics = [name.lower() for name in DECLARATION_RE.findall(code)]

        headings = HEADING_LINE_RE.findall(preceding)
        if headings:
            topics.extend(word for word in headings[-1].lower().split() if len(word) > 3)

        lowered = code.lower()
        topics.extend(keyword for keyword in API_KEYWORDS if keyword in lowered)

        return _unique(topics)[:MAX_TOPICS]

    def analyze_code(self, code: str, language: str) -> CodeAnalysis:
        """Analyze the structure of a single snippet."""
        return CodeAnalysis(
            language=language,
            functions=self._extract_functions(code, language),
            classes=self._extract_classes(code, language),
            imports=self._extract_imports(code, language),
            complexity=calculate_complexity(code),
        )

    def _extract_functions(self, code: str, language: str) -> List[str]:
        family = normalize_language(language)
        if family == "javascript":
            pattern = r'(?:function\s+|const\s+|let\s+|var\s+)(\w+)\s*=?\s*(?:function|\(|async)'
        elif family == "python":
            pattern = r'def\s+(\w+)\s*\('
        else:
            return []
        return _unique(re.findall(pattern, code))

    def _extract_classes(self, code: str, language: str) -> List[str]:
        if normalize_language(language) not in ("javascript", "python"):
            return []
        return _unique(re.findall(r'class\s+(\w+)', code))

    def _extract_imports(self, code: str, language: str) -> List[str]:
        family = normalize_language(language)
        if family == "javascript":
            found = re.findall(r'\bfrom\s+[\'"]([^\'"]+)[\'"]', code)
            found += re.findall(r'\bimport\s*\(?\s*[\'"]([^\'"]+)[\'"]', code)
            found += re.findall(r'\brequire\s*\(\s*[\'"]([^\'"]+)[\'"]\s*\)', code)
            return _unique(found)
        if family == "python":
            found = []
            for from_module, module in re.findall(r'^\s*(?:from\s+([\w.]+)\s+import|import\s+([\w.]+))', code, re.MULTILINE):
                found.append(from_module or module)
            return _unique(found)
        return []

    def extract_use_cases(self, content: str) -> Dict[str, List[ExtractedCodeExample]]:
        """Group extracted examples by their first topic ('general' if none)."""
        use_cases: Dict[str, List[ExtractedCodeExample]] = {}
        for example in self.extract_examples(content):
            topic = example.topics[0] if example.topics else "general"
            use_cases.setdefault(topic, []).append(example)
        return use_cases
