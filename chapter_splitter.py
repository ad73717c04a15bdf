from bs4 import BeautifulSoup, NavigableString, Tag, XMLParsedAsHTMLWarning
from bs4.builder import ParserRejectedMarkup
from bs4.dammit import EntitySubstitution
from bs4.element import PageElement, PreformattedString
from bs4.formatter import HTMLFormatter, XMLFormatter
import copy
from html.entities import html5
from lxml import etree
import logging
import re
from typing import Iterable, List, Optional
import warnings

from epub_parts import ContentBlock, ContentBlocks, ContentType, SplitResult


logger = logging.getLogger(__name__)

# malformed XHTML still carries its XML declaration into the HTML fallback
warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)

DEFAULT_EXEMPT_FILENAMES = frozenset([
    "nav.xhtml",
    "toc.xhtml",
    "title.xhtml",
    "contents.xhtml",
    "content.xhtml",
    "author.xhtml",
    "cover.xhtml",
])

MEDIA_TAGS = ("img", "svg")

PRESERVE_WHITESPACE_TAGS = ("pre", "textarea")

XML_PREDEFINED_ENTITIES = frozenset(["amp", "lt", "gt", "quot", "apos"])

ENTITY_REFERENCE = re.compile(r"&([A-Za-z][A-Za-z0-9]*);")

class ChapterParseError(ValueError):
    """Raised when chapter markup can't be parsed, even leniently."""
    pass


class SourceOrderAttributes:
    """Write attributes in the order they were parsed, namespace declarations first."""

    def attributes(self, tag):
        # the xml builder appends namespace declarations after the other attributes
        declarations = [(k, v) for k, v in tag.attrs.items() if k == "xmlns" or k.startswith("xmlns:")]
        others = [(k, v) for k, v in tag.attrs.items() if not (k == "xmlns" or k.startswith("xmlns:"))]
        return declarations + others


class XHTMLPartFormatter(SourceOrderAttributes, XMLFormatter):
    pass


class HTMLPartFormatter(SourceOrderAttributes, HTMLFormatter):
    pass


XHTML_PART_FORMATTER = XHTMLPartFormatter(entity_substitution=EntitySubstitution.substitute_xml)
HTML_PART_FORMATTER = HTMLPartFormatter(entity_substitution=EntitySubstitution.substitute_xml)


def resolve_named_entities(content: str) -> Optional[str]:
    """
    Replace HTML named entities with numeric character references.

    XHTML chapters that declare a DTD often use entities like &eacute; or
    &mdash;, which the "xml" tree builder would silently drop. The five
    predefined XML entities are left alone.

    Returns:
        The rewritten markup, or None if it uses an entity that isn't
        defined by HTML.
    """
    unknown = []

    def replace(match):
        name = match.group(1)
        if name in XML_PREDEFINED_ENTITIES:
            return match.group(0)
        characters = html5.get(f"{name};")
        if characters is None:
            unknown.append(name)
            return match.group(0)
        return "".join(f"&#{ord(c)};" for c in characters)

    resolved = ENTITY_REFERENCE.sub(replace, content)
    if unknown:
        logger.warning(f"Unknown entities in chapter: {', '.join(sorted(set(unknown)))}")
        return None
    return resolved


def parse_chapter(content: str) -> BeautifulSoup:
    """
    Parse chapter markup, preferring strict XHTML.

    Well-formed XHTML is built with the "xml" tree builder so namespaces
    survive serialization. Anything that is not well-formed, has no
    <body>, or uses an unknown entity is re-parsed with the lenient lxml
    HTML builder.

    Args:
        content (str): Raw chapter markup.

    Returns:
        BeautifulSoup: The parsed document.

    Raises:
        ChapterParseError: If the lenient parser rejects the markup too.
    """
    resolved = resolve_named_entities(content)
    if resolved is None:
        logger.warning("Unresolvable entity in XHTML, falling back to the HTML parser.")
    else:
        try:
            strict_parser = etree.XMLParser(resolve_entities=False, no_network=True)
            etree.fromstring(resolved.encode("utf-8"), parser=strict_parser)
            soup = BeautifulSoup(resolved, "xml", preserve_whitespace_tags=PRESERVE_WHITESPACE_TAGS)
            if soup.find("body") is not None:
                return soup
            logger.warning("No <body> found in XHTML parse, falling back to the HTML parser.")
        except etree.XMLSyntaxError as e:
            logger.warning(f"XHTML parsing failed, falling back to the HTML parser: {e}")

    try:
        return BeautifulSoup(content, "lxml")
    except ParserRejectedMarkup as e:
        raise ChapterParseError(f"Failed to parse chapter markup: {e}") from e


def serialize_chapter(soup: BeautifulSoup) -> str:
    formatter = XHTML_PART_FORMATTER if soup.is_xml else HTML_PART_FORMATTER
    return soup.decode(formatter=formatter)


def copy_document(soup: BeautifulSoup) -> BeautifulSoup:
    """Deep copy of a parsed chapter, re-parsed from its source-order serialization."""
    return BeautifulSoup(serialize_chapter(soup), builder=soup.builder)


def local_name(tag: Tag) -> str:
    """Tag name without any namespace prefix, lowercased."""
    return tag.name.rsplit(":", 1)[-1].lower()


def is_media_tag(tag) -> bool:
    return isinstance(tag, Tag) and local_name(tag) in MEDIA_TAGS


def is_text_node(node) -> bool:
    # comments, doctypes and CDATA are all preformatted strings
    return isinstance(node, NavigableString) and not isinstance(node, PreformattedString)


def classify_node(node: PageElement) -> ContentType:
    """
    Classify a node as 'text', 'image' or 'whitespace'.

    An element counts as an image when it is (or only holds) media, i.e.
    nothing but blank text remains once every img/svg is removed.
    """
    if isinstance(node, Tag):
        if is_media_tag(node):
            return "image"

        if node.find(is_media_tag) is None:
            return "text" if node.get_text().strip() else "whitespace"

        without_media = copy.copy(node)
        while (media := without_media.find(is_media_tag)) is not None:
            media.decompose()
        return "text" if without_media.get_text().strip() else "image"

    if is_text_node(node) and node.strip():
        return "text"

    return "whitespace"


def locate_content_root(body: Optional[Tag]) -> Optional[Tag]:
    """
    Return the element whose children are grouped for splitting.

    A body wrapping everything in a single <div> is unwrapped to that div.
    """
    if body is None:
        return None

    child_elements = [child for child in body.children if isinstance(child, Tag)]
    if len(child_elements) == 1 and local_name(child_elements[0]) == "div":
        return child_elements[0]

    return body


def collect_content_nodes(root: Tag) -> List[PageElement]:
    """Direct children of root, minus blank text, comments and the like."""
    nodes = []
    for child in root.children:
        if isinstance(child, Tag):
            nodes.append(child)
        elif is_text_node(child) and child.strip():
            nodes.append(child)
    return nodes


def group_nodes_by_type(nodes: Iterable[PageElement]) -> ContentBlocks:
    """
    Coalesce consecutive nodes of the same content type into blocks.

    Whitespace elements (empty anchors, line breaks) never open a block.
    They join the block they sit in, or the next one when they come first.
    """
    blocks: ContentBlocks = []
    leading: List[PageElement] = []

    for node in nodes:
        content_type = classify_node(node)

        if content_type == "whitespace":
            if blocks:
                blocks[-1].nodes.append(node)
            else:
                leading.append(node)
            continue

        if not blocks or blocks[-1].content_type != content_type:
            blocks.append(ContentBlock(content_type=content_type, nodes=leading))
            leading = []
        blocks[-1].nodes.append(node)

    return blocks


def analyze_chapter(soup: BeautifulSoup):
    """
    Find the content root of a parsed chapter and its content blocks.

    Returns:
        Tuple of (content root or None, meaningful child nodes, blocks).
    """
    root = locate_content_root(soup.find("body"))
    if root is None:
        logger.warning("No content container found in chapter.")
        return None, [], []

    nodes = collect_content_nodes(root)
    return root, nodes, group_nodes_by_type(nodes)


def should_split(nodes: List[PageElement], blocks: ContentBlocks) -> bool:
    return len(nodes) >= 2 and len(blocks) >= 2


def needs_splitting(content: str) -> bool:
    """
    Check whether a chapter mixes content types at the top level.

    Args:
        content (str): Raw chapter markup.

    Returns:
        bool: True if the chapter holds at least two content blocks.
    """
    _, nodes, blocks = analyze_chapter(parse_chapter(content))
    return should_split(nodes, blocks)


def build_parts(soup: BeautifulSoup, blocks: ContentBlocks) -> List[str]:
    parts = []
    for block in blocks:
        part = copy_document(soup)
        part_root = locate_content_root(part.find("body"))
        part_root.clear()
        for node in block.nodes:
            part_root.append(copy.copy(node))
        parts.append(serialize_chapter(part))
    return parts


def split_chapter_content(content: str) -> List[str]:
    """
    Split a chapter into one document per content block.

    Each part is a copy of the whole original document (head, namespaces,
    anything outside the content root) with the content root holding only
    that block's nodes.

    Args:
        content (str): Raw chapter markup.

    Returns:
        List of serialized documents in reading order, or an empty list
        if the chapter has fewer than two blocks.
    """
    soup = parse_chapter(content)
    _, nodes, blocks = analyze_chapter(soup)
    if not should_split(nodes, blocks):
        return []
    return build_parts(soup, blocks)


def generate_split_filenames(original_filename: str, part_count: int) -> List[str]:
    """
    Name split parts: name.ext, name_-1.ext, name_-2.ext, ...
    """
    last_dot = original_filename.rfind(".")
    if last_dot != -1:
        base_name = original_filename[:last_dot]
        extension = original_filename[last_dot:]
    else:
        base_name = original_filename
        extension = ""

    filenames = [original_filename]
    for i in range(1, part_count):
        filenames.append(f"{base_name}_-{i}{extension}")

    return filenames


def is_exempt_filename(filename: str, exempt_filenames: Iterable[str] = DEFAULT_EXEMPT_FILENAMES) -> bool:
    base_name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    return base_name in set(exempt_filenames)


def process_chapter(
        content: str,
        filename: str,
        exempt_filenames: Iterable[str] = DEFAULT_EXEMPT_FILENAMES
    ) -> SplitResult:
    """
    Decide whether to split a chapter and, if so, split it.

    Skips are reported with a reason rather than as errors. Any failure
    is caught and returned with success=False and the original content,
    so the caller can leave the file as it was.

    Args:
        content (str): Raw chapter markup.
        filename (str): Chapter path, used for the allow-list check and
            for naming the parts.
        exempt_filenames: Base names that are never split.

    Returns:
        SplitResult
    """
    if is_exempt_filename(filename, exempt_filenames):
        logger.debug(f"Skipping exempt file: {filename}")
        return SplitResult(
            success=True,
            skipped=True,
            reason="exempt_filename",
            original_filename=filename,
            original_content=content
        )

    try:
        soup = parse_chapter(content)
        _, nodes, blocks = analyze_chapter(soup)

        if not should_split(nodes, blocks):
            logger.debug(f"No splitting needed: {filename}")
            return SplitResult(
                success=True,
                skipped=True,
                reason="no_split_needed",
                original_filename=filename,
                original_content=content
            )

        contents = build_parts(soup, blocks)
        if len(contents) <= 1:
            return SplitResult(
                success=True,
                skipped=True,
                reason="split_not_beneficial",
                original_filename=filename,
                original_content=content
            )

        logger.info(f"Split {filename} into {len(contents)} parts.")
        return SplitResult(
            success=True,
            contents=contents,
            filenames=generate_split_filenames(filename, len(contents)),
            original_filename=filename
        )
    except Exception as e:
        logger.error(f"Failed to process chapter {filename}: {e}")
        return SplitResult(
            success=False,
            error=str(e),
            original_filename=filename,
            original_content=content
        )
