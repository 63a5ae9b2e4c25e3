import html
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath

log = logging.getLogger("mkdocs.hooks")

# ---------------------------------------------------------------------------
# Tag marker engine
# ---------------------------------------------------------------------------
#
# Tag markers (in any .md file):
#   `tag:one-tag`        -> [`#one-tag`](tags.md#one-tag "Tag: one-tag")
#   `` tag:one-tag ``    -> same; any code span whose content starts with tag:
#   `tag:`               -> left as-is, warning (empty tag)
#   `tag:two words`      -> left as-is, warning (whitespace in tag)
#
# Markers inside fenced code blocks (``` or ~~~, any length >= 3) are plain
# code and never rewritten, including fences nested in blockquotes and list
# items.  Code spans that don't start with tag: are left alone.
#
# Link targets are relative to the page, so a page at guide/setup.md links
# to ../tags.md#one-tag.  The anchor is the tag's slug (see derive_slug).
#
# The tag index page (tags.md by default) gets one <h2 id="slug"> per tag,
# followed by the pages that use it, sorted by folder (guide/[Setup](...)).
# It is regenerated from scratch on every build and always exists, even when
# no tags are found.
#
# Configuration (mkdocs.yml):
#   extra:
#     tag_index:
#       filename: tags.md
#       title: Tags
# ---------------------------------------------------------------------------

TAG_PREFIX = "tag:"

DEFAULT_FILENAME = "tags.md"
DEFAULT_TITLE = "Tags"

# Opening fence: up to 3 spaces, then ``` or ~~~ (3 or more), then info string
FENCE_OPEN_RE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
# Closing fence: same character, at least as long, nothing but whitespace after
FENCE_CLOSE_RE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})[ \t]*$")

BACKTICK_RUN_RE = re.compile(r"`+")

# Container prefixes: "> " runs, list item markers, ATX headings
BLOCKQUOTE_RE = re.compile(r"^(?: {0,3}> ?)+")
LIST_ITEM_RE = re.compile(r"^ {0,3}(?P<marker>[-+*]|\d{1,9}[.)])(?P<pad> +|$)")
ATX_HEADING_RE = re.compile(r"^ {0,3}#{1,6}(?:[ \t]|$)")

_SLUG_UNSAFE_RE = re.compile(r"[^a-z0-9_-]+")
_SLUG_DASHES_RE = re.compile(r"-{2,}")
_WHITESPACE_RE = re.compile(r"\s")
_TITLE_RE = re.compile(r"^#\s+(.+?)(?:\s+#+)?\s*$")


def derive_slug(tag):
    """
    Map tag text to an anchor-safe slug.

    Lower-case, every run of characters outside [a-z0-9_-] becomes a single
    dash, dash runs collapse, leading/trailing dashes are trimmed.  So
    "One Tag", "one-tag" and "ONE--TAG" all become "one-tag".
    """
    slug = _SLUG_UNSAFE_RE.sub("-", tag.lower())
    slug = _SLUG_DASHES_RE.sub("-", slug)
    return slug.strip("-")


def _line_of(text, offset):
    return text.count("\n", 0, offset) + 1


def _byte_offset(text, offset):
    return len(text[:offset].encode("utf-8", "surrogatepass"))


def _indent_of(line):
    return len(line) - len(line.lstrip(" "))


def _dedent(line, width):
    """Drop up to `width` leading spaces."""
    return line[min(width, _indent_of(line)):]


def _split_quotes(line):
    """Return (blockquote depth, line without the "> " prefixes)."""
    match = BLOCKQUOTE_RE.match(line)
    if match is None:
        return 0, line
    return match.group(0).count(">"), line[match.end():]


def _list_content_indent(match):
    """Column where a list item's content starts (CommonMark's W + N rule)."""
    pad = len(match.group("pad"))
    if pad == 0 or pad > 4:
        return match.end("marker") + 1
    return match.end()


def _is_escaped(text, pos):
    """True if the character at pos is preceded by an odd number of backslashes."""
    count = 0
    while pos - count > 0 and text[pos - count - 1] == "\\":
        count += 1
    return count % 2 == 1


def _humanise(document_id):
    """Turn "guide/getting-started.md" into "Getting Started"."""
    p = PurePosixPath(document_id)
    if p.stem == "index" and p.parent != PurePosixPath("."):
        name = p.parent.name
    else:
        name = p.stem
    return name.replace("-", " ").replace("_", " ").title()


def _normalise_path(document_id):
    return str(PurePosixPath(document_id.replace("\\", "/")))


def _relative_path(target, from_document):
    """Path to target (docs-root relative) as seen from from_document's folder."""
    from posixpath import relpath as posix_relpath

    current_dir = str(PurePosixPath(_normalise_path(from_document)).parent)
    return posix_relpath(_normalise_path(target), current_dir)


def _link_destination(path):
    if any(c in path for c in " ()"):
        return f"<{path}>"
    return path


def _escape_label(text):
    return text.replace("\\", "\\\\").replace("[", "\\[").replace("]", "\\]")


def _breadcrumb(document_id):
    """Folder shown before a page link, e.g. "guide/"; empty at the docs root."""
    parent = PurePosixPath(_normalise_path(document_id)).parent
    if parent == PurePosixPath("."):
        return ""
    return f"{parent}/"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TagIndexConfig:
    """Where the index page goes and what it is called."""

    filename: str = DEFAULT_FILENAME
    title: str = DEFAULT_TITLE

    def __post_init__(self):
        if not isinstance(self.filename, str) or not self.filename.strip():
            raise ValueError("tag_index.filename must be a non-empty string")
        if PurePosixPath(self.filename).is_absolute():
            raise ValueError(
                f"tag_index.filename must be relative to docs_dir, got {self.filename!r}"
            )
        if not self.filename.endswith(".md"):
            raise ValueError(
                f"tag_index.filename must be a .md file, got {self.filename!r}"
            )
        if not isinstance(self.title, str):
            raise ValueError("tag_index.title must be a string")

    @classmethod
    def from_mapping(cls, values):
        """Build from the `extra.tag_index` mapping in mkdocs.yml (may be None)."""
        values = values or {}
        filename = values.get("filename", DEFAULT_FILENAME)
        if isinstance(filename, str):
            filename = _normalise_path(filename.strip())
        return cls(filename=filename, title=values.get("title", DEFAULT_TITLE))


@dataclass(frozen=True)
class Document:
    document_id: str
    text: str
    title: str = None


@dataclass(frozen=True)
class MarkerCandidate:
    """A code span that starts with the tag prefix."""

    start: int
    end: int
    tag: str
    line: int
    problem: str = None
    byte_start: int = None
    byte_end: int = None

    @property
    def valid(self):
        return self.problem is None


@dataclass(frozen=True)
class TagOccurrence:
    tag: str
    slug: str
    document_id: str
    title: str
    offset: int = None
    line: int = None


@dataclass(frozen=True)
class TagWarning:
    document_id: str
    message: str
    offset: int = None
    line: int = None

    def describe(self):
        if self.line is None:
            return self.message
        return f"line {self.line} (offset {self.offset}): {self.message}"


@dataclass
class TagIndexEntry:
    slug: str
    tag: str
    references: list = field(default_factory=list)

    def add_reference(self, document_id, title):
        if any(ref_id == document_id for ref_id, _ in self.references):
            return
        self.references.append((document_id, title))

    def sorted_references(self):
        """References ordered by folder, then file name."""
        return sorted(
            self.references,
            key=lambda ref: PurePosixPath(_normalise_path(ref[0])).parts,
        )


@dataclass
class RewriteResult:
    text: str
    occurrences: list
    warnings: list


@dataclass
class PipelineResult:
    documents: list
    index: Document
    occurrences: list
    warnings: list


# ---------------------------------------------------------------------------
# Marker scanning
# ---------------------------------------------------------------------------


def _tag_problem(tag):
    if not tag:
        return "empty tag"
    if _WHITESPACE_RE.search(tag):
        return f"tag {tag!r} contains whitespace"
    if "`" in tag:
        return f"tag {tag!r} contains a backtick"
    if TAG_PREFIX in tag:
        return f"tag {tag!r} contains the {TAG_PREFIX!r} prefix"
    if not derive_slug(tag):
        return f"tag {tag!r} has no characters usable in an anchor"
    return None


def _iter_blocks(text, problems):
    """
    Yield (start, end) char ranges of inline scopes outside fenced code.

    A scope is a run of non-blank lines at one blockquote depth.  Each list
    item and each ATX heading starts a new scope, and a heading is a scope
    on its own.  Fences are recognised after "> " prefixes and inside list
    item content, and end with their container.  An unclosed fence swallows
    the rest of the document.
    """
    fence = None
    fence_start = 0
    fence_depth = 0
    fence_indent = 0
    list_indent = None
    previous_blank = True
    block_start = None
    block_depth = 0
    offset = 0

    for line in text.splitlines(keepends=True):
        line_start = offset
        offset += len(line)
        depth, rest = _split_quotes(line.rstrip("\r\n"))
        blank = not rest.strip()

        if fence is not None:
            if depth < fence_depth or (not blank and _indent_of(rest) < fence_indent):
                # the blockquote or list item holding the fence has ended
                fence = None
            else:
                close = FENCE_CLOSE_RE.match(_dedent(rest, fence_indent))
                if close:
                    marker = close.group("fence")
                    if marker[0] == fence[0] and len(marker) >= len(fence):
                        fence = None
                continue

        if blank:
            if block_start is not None:
                yield block_start, line_start
                block_start = None
            previous_blank = True
            continue

        base = 0
        if list_indent is not None:
            if _indent_of(rest) >= list_indent:
                base = list_indent
            elif previous_blank:
                list_indent = None
        inner = rest[base:]
        item = LIST_ITEM_RE.match(inner)
        if item:
            list_indent = base + _list_content_indent(item)
            inner = rest[list_indent:]
        previous_blank = False

        opening = FENCE_OPEN_RE.match(inner)
        if opening:
            marker = opening.group("fence")
            if not (marker[0] == "`" and "`" in opening.group("info")):
                if block_start is not None:
                    yield block_start, line_start
                    block_start = None
                fence = marker
                fence_start = line_start
                fence_depth = depth
                fence_indent = len(rest) - len(inner)
                continue

        heading = ATX_HEADING_RE.match(inner) is not None
        if block_start is not None and (item or heading or depth != block_depth):
            yield block_start, line_start
            block_start = None
        if block_start is None:
            block_start = line_start
            block_depth = depth
        if heading:
            yield block_start, offset
            block_start = None

    if block_start is not None:
        yield block_start, offset

    if fence is not None and problems is not None:
        problems.append(
            (fence_start, f"unclosed {fence} fence; rest of the page is left as code")
        )


def _iter_code_spans(text, start, end, problems):
    """Yield (span_start, span_end, content) for each code span in text[start:end]."""
    pos = start
    while True:
        opener = BACKTICK_RUN_RE.search(text, pos, end)
        if opener is None:
            return
        open_start = opener.start()
        if _is_escaped(text, open_start):
            # \` is a literal backtick; the rest of the run can still open
            open_start += 1
            if open_start == opener.end():
                pos = opener.end()
                continue
        width = opener.end() - open_start

        closer = None
        search = opener.end()
        while True:
            run = BACKTICK_RUN_RE.search(text, search, end)
            if run is None:
                break
            if run.end() - run.start() == width:
                closer = run
                break
            search = run.end()

        if closer is None:
            if problems is not None:
                problems.append(
                    (open_start, "unclosed code span; rest of the paragraph is left as-is")
                )
            return

        yield open_start, closer.end(), text[opener.end():closer.start()]
        pos = closer.end()


def scan_markers(text, problems=None):
    """
    Yield MarkerCandidate for every `tag:...` code span, left to right.

    Invalid markers are yielded too, with .problem set.  Structural issues
    (unclosed fence or code span) are appended to `problems` as
    (offset, message) tuples when a list is given.
    """
    for block_start, block_end in _iter_blocks(text, problems):
        for span_start, span_end, content in _iter_code_spans(
            text, block_start, block_end, problems
        ):
            content = content.strip()
            if not content.startswith(TAG_PREFIX):
                continue
            tag = content[len(TAG_PREFIX):]
            yield MarkerCandidate(
                start=span_start,
                end=span_end,
                tag=tag,
                line=_line_of(text, span_start),
                byte_start=_byte_offset(text, span_start),
                byte_end=_byte_offset(text, span_end),
                problem=_tag_problem(tag),
            )


def extract_title(markdown_text):
    """First ATX level-1 heading outside fenced code, or None."""
    for block_start, block_end in _iter_blocks(markdown_text, None):
        for line in markdown_text[block_start:block_end].splitlines():
            match = _TITLE_RE.match(line)
            if match:
                return match.group(1).strip()
    return None


# ---------------------------------------------------------------------------
# Index aggregation
# ---------------------------------------------------------------------------


class TagIndex:
    """Collects occurrences across all pages and renders the index page."""

    def __init__(self, config=None):
        self.config = config or TagIndexConfig()
        self._entries = {}
        self._spellings = {}
        self.warnings = []

    def add(self, occurrence):
        entry = self._entries.get(occurrence.slug)
        if entry is None:
            entry = TagIndexEntry(slug=occurrence.slug, tag=occurrence.tag)
            self._entries[occurrence.slug] = entry
            self._spellings[occurrence.slug] = {occurrence.tag}
        elif occurrence.tag not in self._spellings[occurrence.slug]:
            self._spellings[occurrence.slug].add(occurrence.tag)
            self.warnings.append(
                TagWarning(
                    document_id=occurrence.document_id,
                    message=(
                        f"tag {occurrence.tag!r} has the same anchor #{entry.slug} "
                        f"as {entry.tag!r}; listed under {entry.tag!r}"
                    ),
                    offset=occurrence.offset,
                    line=occurrence.line,
                )
            )
        entry.add_reference(occurrence.document_id, occurrence.title)

    def entries(self):
        return sorted(
            self._entries.values(), key=lambda e: (e.tag.casefold(), e.tag, e.slug)
        )

    def __len__(self):
        return len(self._entries)

    def render(self):
        filename = self.config.filename
        lines = [f"# {self.config.title}", ""]

        entries = self.entries()
        if not entries:
            lines.append("No tags were found.")
            return "\n".join(lines) + "\n"

        for entry in entries:
            lines.append(
                f'<h2 id="{html.escape(entry.slug)}">'
                f"<code>{html.escape(entry.tag)}</code></h2>"
            )
            lines.append("")
            for document_id, title in entry.sorted_references():
                url = _link_destination(_relative_path(document_id, filename))
                crumb = _escape_label(_breadcrumb(document_id))
                lines.append(f"- {crumb}[{_escape_label(title)}]({url})")
            lines.append("")

        return "\n".join(lines)


def aggregate(occurrences, config=None):
    """Render the index page text for a flat list of occurrences."""
    index = TagIndex(config)
    for occurrence in occurrences:
        index.add(occurrence)
    return index.render()


# ---------------------------------------------------------------------------
# Rewriting
# ---------------------------------------------------------------------------


class TagEngine:
    """Rewrites markers page by page and feeds the tag index."""

    def __init__(self, config=None):
        self.config = config or TagIndexConfig()
        self.index = TagIndex(self.config)
        self.occurrences = []
        self.warnings = []
        self.pages_with_tags = set()

    def is_index_page(self, document_id):
        return _normalise_path(document_id) == self.config.filename

    def link_target(self, document_id, slug):
        return f"{_relative_path(self.config.filename, document_id)}#{slug}"

    def make_link(self, document_id, tag):
        slug = derive_slug(tag)
        title = f"Tag: {tag}".replace('"', '\\"')
        target = _link_destination(self.link_target(document_id, slug))
        return f'[`#{tag}`]({target} "{title}")'

    def process(self, document_id, text, title=None):
        """
        Rewrite every valid marker in text.  Pure: nothing is recorded.

        Everything outside the marker spans is copied through unchanged.
        """
        if title is None:
            title = extract_title(text) or _humanise(document_id)

        problems = []
        parts = []
        occurrences = []
        warnings = []
        last = 0

        for candidate in scan_markers(text, problems):
            if not candidate.valid:
                warnings.append(
                    TagWarning(
                        document_id=document_id,
                        message=f"malformed tag marker left as-is: {candidate.problem}",
                        offset=candidate.byte_start,
                        line=candidate.line,
                    )
                )
                continue
            parts.append(text[last:candidate.start])
            parts.append(self.make_link(document_id, candidate.tag))
            last = candidate.end
            occurrences.append(
                TagOccurrence(
                    tag=candidate.tag,
                    slug=derive_slug(candidate.tag),
                    document_id=document_id,
                    title=title,
                    offset=candidate.byte_start,
                    line=candidate.line,
                )
            )
        parts.append(text[last:])

        for offset, message in problems:
            warnings.append(
                TagWarning(
                    document_id=document_id,
                    message=message,
                    offset=_byte_offset(text, offset),
                    line=_line_of(text, offset),
                )
            )
        warnings.sort(key=lambda w: w.offset)

        return RewriteResult(text="".join(parts), occurrences=occurrences, warnings=warnings)

    def rewrite(self, document_id, text, title=None):
        """Rewrite a page and record its occurrences.  Returns (text, occurrences)."""
        result = self.process(document_id, text, title)
        self.warnings.extend(result.warnings)
        for occurrence in result.occurrences:
            self.occurrences.append(occurrence)
            self.index.add(occurrence)
        if result.occurrences:
            self.pages_with_tags.add(document_id)
        return result.text, result.occurrences

    def render_index(self):
        return self.index.render()

    def index_document(self):
        return Document(
            document_id=self.config.filename,
            text=self.render_index(),
            title=self.config.title,
        )

    def all_warnings(self):
        return list(self.warnings) + list(self.index.warnings)


# ---------------------------------------------------------------------------
# Document pipeline
# ---------------------------------------------------------------------------


def run_pipeline(documents, config=None):
    """
    Rewrite every document, then build the index page from all of them.

    `documents` is an ordered iterable of Document or (document_id, text)
    pairs.  The output keeps ids and order, with the index page appended.  A
    source document already named like the index is replaced in place.
    """
    engine = TagEngine(config)
    output = []
    index_position = None

    for document in documents:
        if not isinstance(document, Document):
            document = Document(*document)
        if engine.is_index_page(document.document_id):
            engine.warnings.append(
                TagWarning(
                    document_id=document.document_id,
                    message="page is replaced by the generated tag index",
                )
            )
            index_position = len(output)
            output.append(None)
            continue
        text, _ = engine.rewrite(document.document_id, document.text, document.title)
        output.append(Document(document.document_id, text, document.title))

    index = engine.index_document()
    if index_position is None:
        output.append(index)
    else:
        output[index_position] = index

    return PipelineResult(
        documents=output,
        index=index,
        occurrences=list(engine.occurrences),
        warnings=engine.all_warnings(),
    )


# ---------------------------------------------------------------------------
# Module-level singleton, re-created each build via on_config()
# ---------------------------------------------------------------------------

_engine = TagEngine()


def _generated_file(config, src_uri, content):
    from mkdocs.structure.files import File

    return File.generated(config, src_uri, content=content)


# ---------------------------------------------------------------------------
# MkDocs hook entry points
# ---------------------------------------------------------------------------


def on_config(config, **kwargs):
    """Read extra.tag_index and start a fresh engine."""
    global _engine

    logging.getLogger("mkdocs.hooks").setLevel(logging.INFO)

    extra = config.get("extra") or {}
    _engine = TagEngine(TagIndexConfig.from_mapping(extra.get("tag_index")))
    return config


def on_files(files, config, **kwargs):
    """Collect tags from every page up front, then add the generated index page."""
    existing = None
    for f in files:
        src = f.src_uri
        if _engine.is_index_page(src):
            existing = f
            continue
        if not src.endswith(".md"):
            continue
        _engine.rewrite(src, f.content_string)

    filename = _engine.config.filename
    if existing is not None:
        log.warning(f"[tags] {filename} exists in docs_dir and is replaced by the tag index")
        files.remove(existing)

    files.append(_generated_file(config, filename, _engine.render_index()))

    for w in _engine.index.warnings:
        log.warning(f"[tags] {w.document_id}: {w.describe()}")

    log.info(
        f"[tags] Indexed {len(_engine.index)} tag(s) from "
        f"{len(_engine.pages_with_tags)} page(s) into {filename}"
    )
    return files


def on_page_markdown(markdown, page, config, files, **kwargs):
    """Rewrite tag markers in the page's markdown."""
    src = page.file.src_uri
    if _engine.is_index_page(src):
        return markdown

    result = _engine.process(src, markdown, title=page.title or None)
    for w in result.warnings:
        log.warning(f"[tags] {src}: {w.describe()}")
    return result.text


def on_post_build(config, **kwargs):
    """Post-build summary."""
    if not len(_engine.index):
        log.info(f"[tags] No tags found; {_engine.config.filename} lists none")
        return config

    log.info(
        f"[tags] {len(_engine.index)} tag(s), {len(_engine.occurrences)} marker(s) "
        f"across {len(_engine.pages_with_tags)} page(s)"
    )
    return config
