import pytest

from app.services.file_extractor import ProgressiveFileExtractor
from app.services.file_extractor import is_backend_file
from app.services.file_extractor import is_frontend_file

SAMPLE = """Intro text.

```motoko
// src/backend/src/main.mo
actor Counter {
  var count : Nat = 0;
  public func inc() : async Nat { count += 1; count };
}
```

Some prose between files.

```tsx
// src/frontend/src/App.tsx
export default function App() {
  return <h1>Counter</h1>;
}
```
"""


@pytest.fixture
def extractor():
    return ProgressiveFileExtractor()


def test_detects_complete_files(extractor):
    result = extractor.detect(SAMPLE)
    assert list(result.complete) == ["src/backend/src/main.mo", "src/frontend/src/App.tsx"]
    assert result.in_progress == {}
    assert result.complete["src/backend/src/main.mo"].startswith("actor Counter {")
    assert "```" not in result.complete["src/frontend/src/App.tsx"]


def test_unclosed_block_is_in_progress(extractor):
    text = "```tsx\n// src/frontend/src/App.tsx\nexport default function App() {\n"
    result = extractor.detect(text)
    assert result.complete == {}
    assert list(result.in_progress) == ["src/frontend/src/App.tsx"]


def test_path_line_alone_is_not_reported(extractor):
    result = extractor.detect("```tsx\n// src/frontend/src/App.tsx\n")
    assert result.names == []


def test_complete_set_only_grows_over_prefixes(extractor):
    previous: set[str] = set()
    for end in range(len(SAMPLE) + 1):
        complete = set(extractor.detect(SAMPLE[:end]).complete)
        assert previous <= complete
        previous = complete
    assert previous == {"src/backend/src/main.mo", "src/frontend/src/App.tsx"}


def test_block_without_path_comment_is_ignored(extractor):
    text = "```bash\nnpm install\nnpm run dev\n```\n"
    assert extractor.detect(text).names == []


def test_short_content_is_not_complete(extractor):
    text = "```css\n/* src/frontend/src/a.css */\na{}\n```\n"
    assert extractor.detect(text).complete == {}


def test_duplicate_paths_first_wins_case_insensitive(extractor):
    text = (
        "```tsx\n// src/frontend/src/App.tsx\nexport const first = 1;\n```\n"
        "```tsx\n// src/frontend/src/app.tsx\nexport const second = 2;\n```\n"
    )
    result = extractor.detect(text)
    assert result.complete == {"src/frontend/src/App.tsx": "export const first = 1;"}


@pytest.mark.parametrize(
    "path",
    [
        "package-lock.json",
        "frontend/.env.local",
        "vite.config.ts",
        "logs/debug.log",
        "dist/assets/index.js",
        "node_modules/react/index.js",
    ],
)
def test_excluded_paths_are_skipped(extractor, path):
    text = f"```tsx\n// {path}\nconsole.log('this is long enough');\n```\n"
    assert extractor.detect(text).names == []


@pytest.mark.parametrize(
    "language,raw,expected",
    [
        ("motoko", "main.mo", "src/backend/src/main.mo"),
        ("tsx", "App.tsx", "src/frontend/src/App.tsx"),
        ("motoko", "src/backend/src/Types", "src/backend/src/Types.mo"),
        ("css", "styles/index", "styles/index.css"),
        ("tsx", "components/Header", "components/Header.tsx"),
        ("tsx", "./components/List.tsx", "components/List.tsx"),
    ],
)
def test_paths_are_normalized(extractor, language, raw, expected):
    text = f"```{language}\n// {raw}\nsome content that is long enough\n```\n"
    assert list(extractor.detect(text).complete) == [expected]


def test_content_is_dedented(extractor):
    text = "```tsx\n    // src/frontend/src/x.ts\n    export const x = 1;\n      export const y = 2;\n    ```\n"
    result = extractor.detect(text)
    assert result.complete["src/frontend/src/x.ts"] == "export const x = 1;\n  export const y = 2;"


def test_phase_filters():
    assert is_backend_file("src/backend/src/main.mo")
    assert is_backend_file("dfx.json")
    assert not is_backend_file("src/frontend/src/App.tsx")
    assert is_frontend_file("src/frontend/src/App.tsx")
    assert is_frontend_file("src/frontend/src/index.css")
    assert not is_frontend_file("src/backend/src/main.mo")
    assert not is_frontend_file("src/declarations/backend.d.ts")
