"""Tests for code example extraction and analysis."""

import pytest

from pipelines.code_extractor import (
    CodeExtractor,
    DIFFICULTY_RULES,
    calculate_complexity,
    calculate_difficulty,
    normalize_language,
    score,
)
from pipelines.models import Complexity, Difficulty


@pytest.fixture
def extractor():
    return CodeExtractor()


TS_DOC = """# Fetching Users

Load users from the API.

```ts
async function loadUsers(): Promise<User[]> {
  // Fetch all users from the server
  const response = await fetch('/api/users');
  return response.json();
}
```
"""


class TestExtractExamples:
    """Test suite for CodeExtractor.extract_examples."""

    def test_short_block_is_discarded(self, extractor):
        content = "Intro\n\n```ts\nconst x = 1;\n```\n\nOutro"
        assert extractor.extract_examples(content) == []

    def test_single_ts_block(self, extractor):
        content = "Intro\n\n```ts\nconst total = items.length + 1;\n```\n\nOutro"
        examples = extractor.extract_examples(content)
        assert len(examples) == 1
        assert examples[0].language == "ts"
        assert examples[0].code == "const total = items.length + 1;"

    def test_fields_of_extracted_example(self, extractor):
        example = extractor.extract_examples(TS_DOC)[0]
        assert example.context == "# Fetching Users"
        assert example.description == "Fetch all users from the server"
        assert example.topics[:2] == ["loadusers", "response"]
        assert "fetching" in example.topics
        assert "await" in example.topics
        assert len(example.topics) <= 8
        assert example.difficulty == Difficulty.ADVANCED

    def test_language_hint_for_unlabelled_blocks(self, extractor):
        content = "```\nprint('hello from python')\n```"
        assert extractor.extract_examples(content, "python")[0].language == "python"
        assert extractor.extract_examples(content)[0].language == "text"

    def test_context_falls_back_to_last_line(self, extractor):
        content = "First line\nCall the helper like this:\n\n```js\nhelper.run({ verbose: true });\n```"
        example = extractor.extract_examples(content)[0]
        assert example.context == "Call the helper like this:"
        assert example.description == "Call the helper like this:"

    def test_python_comment_and_docstring_descriptions(self, extractor):
        commented = "```python\n# Compute the checksum\nvalue = checksum(data)\n```"
        assert extractor.extract_examples(commented)[0].description == "Compute the checksum"

        documented = '```python\ndef run():\n    """Run the pipeline."""\n    return 1\n```'
        assert extractor.extract_examples(documented)[0].description == "Run the pipeline."

    def test_default_description(self, extractor):
        content = "```text\nthe quick brown fox jumps\n```"
        assert extractor.extract_examples(content)[0].description == "Code example"


class TestDifficulty:
    """Test suite for difficulty scoring."""

    def test_tiers(self):
        assert calculate_difficulty("x = 1") == Difficulty.BEGINNER
        assert calculate_difficulty("class Foo: pass") == Difficulty.INTERMEDIATE
        assert calculate_difficulty("async function f(): Promise<T> {}") == Difficulty.ADVANCED

    def test_weights(self):
        assert score("x = 1", DIFFICULTY_RULES) == 0
        assert score("List<int>", DIFFICULTY_RULES) == 2
        assert score("items.map(f)", DIFFICULTY_RULES) == 1

    @pytest.mark.parametrize("code", [
        "x = 1",
        "class Foo: pass",
        "items.map(f).reduce(g)",
        "interface A {}",
        "function walk(node) { /* recursion */ }",
    ])
    def test_adding_async_never_lowers_difficulty(self, code):
        order = [Difficulty.BEGINNER, Difficulty.INTERMEDIATE, Difficulty.ADVANCED]
        before = order.index(calculate_difficulty(code))
        after = order.index(calculate_difficulty("async " + code))
        assert after >= before


class TestAnalyzeCode:
    """Test suite for CodeExtractor.analyze_code."""

    def test_javascript(self, extractor):
        code = (
            "import React from 'react';\n"
            "const axios = require('axios');\n"
            "function render() { return 1; }\n"
            "const load = async () => {};\n"
            "class Widget extends Base {}\n"
        )
        analysis = extractor.analyze_code(code, "jsx")
        assert analysis.functions == ["render", "load"]
        assert analysis.classes == ["Widget"]
        assert analysis.imports == ["react", "axios"]
        assert analysis.language == "jsx"

    def test_python(self, extractor):
        code = (
            "import os\n"
            "from typing import List\n"
            "class Loader:\n"
            "    def load(self):\n"
            "        return [x for x in os.listdir('.')]\n"
        )
        analysis = extractor.analyze_code(code, "py")
        assert analysis.functions == ["load"]
        assert analysis.classes == ["Loader"]
        assert analysis.imports == ["os", "typing"]

    def test_unknown_language_has_no_symbols(self, extractor):
        analysis = extractor.analyze_code("fn main() {}", "rust")
        assert analysis.functions == []
        assert analysis.classes == []
        assert analysis.imports == []

    def test_complexity_tiers(self):
        assert calculate_complexity("x = 1") == Complexity.SIMPLE
        assert calculate_complexity("async () => fetch(u).then(r => r)") == Complexity.MODERATE
        long_code = "\n".join(["try {", "await Promise.all(x).then(f)", "} catch (e) {}"] * 40)
        assert calculate_complexity(long_code) == Complexity.COMPLEX

    def test_normalize_language(self):
        assert normalize_language("TSX") == "javascript"
        assert normalize_language("py") == "python"
        assert normalize_language(None) == "text"
        assert normalize_language("go") == "go"


class TestUseCases:
    """Test suite for CodeExtractor.extract_use_cases."""

    def test_grouped_by_first_topic(self, extractor):
        content = "```text\nthe quick brown fox jumps\n```\n\n" + TS_DOC
        use_cases = extractor.extract_use_cases(content)
        assert set(use_cases) == {"loadusers", "general"}
        assert len(use_cases["loadusers"]) == 1
        assert len(use_cases["general"]) == 1
