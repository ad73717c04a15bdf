from lxml import etree
import logging
from typing import Iterable, List, Optional, Set, Union

from epub_parts import (
    ManifestItem, ManifestItems, PackageUpdateResult, SpineItemref, ValidationReport
    )


logger = logging.getLogger(__name__)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

REQUIRED_ELEMENTS = ("package", "manifest", "spine", "metadata")

class OpfParseError(ValueError):
    """Raised when the package document is not well-formed XML."""
    pass


class OpfStructureError(RuntimeError):
    """Raised when an expected OPF element or id is missing."""

    def __init__(self, message: str, expected: Optional[str] = None):
        super().__init__(message)
        self.expected = expected


class DuplicateManifestIdError(OpfStructureError):
    """Raised when a new manifest item would reuse an existing id."""
    pass


def parse_opf(package_doc: str) -> etree._ElementTree:
    """
    Parse an OPF package document.

    The tree keeps comments, whitespace and attribute order, so
    serializing it only changes what was edited.

    Raises:
        OpfParseError: If the document is not well-formed.
    """
    try:
        strict_parser = etree.XMLParser(resolve_entities=False, no_network=True)
        root = etree.fromstring(package_doc.encode("utf-8"), parser=strict_parser)
    except etree.XMLSyntaxError as e:
        raise OpfParseError(f"Failed to parse OPF file: {e}") from e
    return root.getroottree()


def ensure_xml_declaration(xml: str) -> str:
    if not xml.lstrip().startswith("<?xml"):
        return f"{XML_DECLARATION}\n{xml}"
    return xml


def serialize_opf(tree: etree._ElementTree) -> str:
    """Serialize a parsed package document with a UTF-8 XML declaration."""
    # tostring(xml_declaration=True) would single-quote the declaration
    return f"{XML_DECLARATION}\n{etree.tostring(tree, encoding='unicode')}"


def find_element(tree: etree._ElementTree, name: str) -> Optional[etree._Element]:
    """First element with this local name, in any namespace."""
    return next(tree.getroot().iter(f"{{*}}{name}"), None)


def document_ids(tree: etree._ElementTree) -> Set[str]:
    return {str(value) for value in tree.xpath("//@id")}


def collect_document_ids(package_doc: str) -> Set[str]:
    """Every id attribute value in a package document, not just the manifest's."""
    return document_ids(parse_opf(package_doc))


def leading_indent(element: etree._Element) -> Optional[str]:
    """Whitespace text just before element, if any, so inserted siblings line up."""
    previous = element.getprevious()
    text = previous.tail if previous is not None else element.getparent().text
    if text and not text.strip():
        return text
    return None


def insert_siblings_after(anchor: etree._Element, new_elements: List[etree._Element]):
    """Chain new_elements after anchor, each one indented like the anchor."""
    indent = leading_indent(anchor)
    original_tail = anchor.tail

    current = anchor
    for element in new_elements:
        current.addnext(element)
        current.tail = indent
        current = element
    current.tail = original_tail


def new_sibling(anchor: etree._Element, attrs: dict) -> etree._Element:
    # created under the anchor's parent so it reuses the parent's namespace prefix
    element = etree.SubElement(anchor.getparent(), anchor.tag)
    for name, value in attrs.items():
        element.set(name, value)
    return element


def find_manifest_item(tree: etree._ElementTree, item_id: str) -> etree._Element:
    manifest = find_element(tree, "manifest")
    if manifest is None:
        raise OpfStructureError("No manifest element found in OPF file.", expected="manifest")

    item = next((el for el in manifest.iter("{*}item") if el.get("id") == item_id), None)
    if item is None:
        raise OpfStructureError(
            f'Original item with id "{item_id}" not found in manifest.', expected=item_id
        )
    return item


def insert_manifest_items(
        package_doc: str,
        after_id: str,
        items: Iterable[Union[ManifestItem, dict]]
    ) -> str:
    """
    Insert manifest items right after the item with id after_id.

    New items keep their input order, each one following the last, and
    reuse the namespace prefix and indentation of the original item.

    Args:
        package_doc (str): OPF package document.
        after_id (str): Id of the manifest item to insert after.
        items: ManifestItem objects (or dicts with the same fields).

    Returns:
        str: The updated package document.

    Raises:
        OpfParseError: If the document is not well-formed.
        OpfStructureError: If the manifest or the after_id item is missing.
        DuplicateManifestIdError: If a new id is already taken.
    """
    items = [item if isinstance(item, ManifestItem) else ManifestItem.model_validate(item) for item in items]
    tree = parse_opf(package_doc)
    original_item = find_manifest_item(tree, after_id)

    taken_ids = document_ids(tree)
    for item in items:
        if item.id in taken_ids:
            raise DuplicateManifestIdError(
                f'Manifest id "{item.id}" is already in use.', expected=item.id
            )
        taken_ids.add(item.id)

    new_items = []
    for item in items:
        attrs = {
            "id": item.id,
            "href": item.href,
            "media-type": item.media_type,
        }
        if item.properties:
            attrs["properties"] = item.properties
        new_items.append(new_sibling(original_item, attrs))

    insert_siblings_after(original_item, new_items)
    return serialize_opf(tree)


def insert_spine_refs(package_doc: str, after_id: str, new_ids: Iterable[str]) -> str:
    """
    Insert spine itemrefs right after the itemref pointing at after_id.

    Inserted itemrefs copy the original's linear value ("yes" if unset).
    A manifest item with no spine entry is left alone: the document comes
    back unchanged.

    Raises:
        OpfParseError: If the document is not well-formed.
        OpfStructureError: If there is no spine element.
    """
    tree = parse_opf(package_doc)
    spine = find_element(tree, "spine")
    if spine is None:
        raise OpfStructureError("No spine element found in OPF file.", expected="spine")

    original_itemref = next((el for el in spine.iter("{*}itemref") if el.get("idref") == after_id), None)
    if original_itemref is None:
        logger.warning(
            f'Original itemref with id "{after_id}" not found in spine, skipping spine update for it.'
        )
        return ensure_xml_declaration(package_doc)

    linear = original_itemref.get("linear") or "yes"
    new_itemrefs = [
        new_sibling(original_itemref, {"idref": new_id, "linear": linear})
        for new_id in new_ids
    ]

    insert_siblings_after(original_itemref, new_itemrefs)
    return serialize_opf(tree)


def update_manifest_and_spine(
        package_doc: str,
        after_id: str,
        new_files: Iterable[Union[ManifestItem, dict]]
    ) -> PackageUpdateResult:
    """
    Register new chapter parts in the manifest, then in the spine.

    Either both updates land or the original document comes back along
    with the error, so the caller can retry from a clean document.
    """
    if not after_id or new_files is None:
        return PackageUpdateResult(
            success=False,
            content=package_doc,
            error="Invalid update data: after_id and new_files are required."
        )

    try:
        new_files = [f if isinstance(f, ManifestItem) else ManifestItem.model_validate(f) for f in new_files]
        updated = insert_manifest_items(package_doc, after_id, new_files)
        updated = insert_spine_refs(updated, after_id, [f.id for f in new_files])
        return PackageUpdateResult(success=True, content=updated)
    except Exception as e:
        logger.error(f"Failed to update manifest and spine after {after_id}: {e}")
        return PackageUpdateResult(success=False, content=package_doc, error=str(e))


def generate_unique_ids(base_id: str, count: int, existing_ids: Iterable[str] = ()) -> List[str]:
    """
    Generate count ids: base_id, base_id_-1, base_id_-2, ...

    Any id already in existing_ids (or generated earlier in the same
    call) gets _1, _2, ... appended until it is unique.
    """
    ids = []
    taken = set(existing_ids)

    for i in range(count):
        new_id = base_id if i == 0 else f"{base_id}_-{i}"

        counter = 0
        candidate_id = new_id
        while candidate_id in taken:
            counter += 1
            candidate_id = f"{new_id}_{counter}"

        ids.append(candidate_id)
        taken.add(candidate_id)

    return ids


def validate_opf_structure(package_doc: str) -> ValidationReport:
    """Check for the package, manifest, spine and metadata elements."""
    try:
        tree = parse_opf(package_doc)
    except OpfParseError as e:
        return ValidationReport(valid=False, error=str(e))

    missing = [name for name in REQUIRED_ELEMENTS if find_element(tree, name) is None]
    if missing:
        return ValidationReport(
            valid=False,
            missing=missing,
            error=f"Missing required elements: {', '.join(missing)}"
        )

    return ValidationReport(valid=True)


def list_manifest_items(package_doc: str) -> ManifestItems:
    """
    Get the manifest items of a package document, in document order.

    Items without an id or href are skipped.
    """
    manifest = find_element(parse_opf(package_doc), "manifest")
    if manifest is None:
        return []

    items: ManifestItems = []
    for element in manifest.iter("{*}item"):
        if not element.get("id") or not element.get("href"):
            logger.warning(
                f"Skipping manifest item without id or href: {etree.tostring(element, encoding='unicode', with_tail=False)}"
            )
            continue
        fields = {"id": element.get("id"), "href": element.get("href"), "properties": element.get("properties")}
        if element.get("media-type"):
            fields["media_type"] = element.get("media-type")
        items.append(ManifestItem(**fields))

    return items


def list_spine_items(package_doc: str) -> List[SpineItemref]:
    spine = find_element(parse_opf(package_doc), "spine")
    if spine is None:
        return []

    return [
        SpineItemref(idref=element.get("idref"), linear=element.get("linear") or "yes")
        for element in spine.iter("{*}itemref")
        if element.get("idref")
    ]


def plan_split_manifest_items(
        original_item: ManifestItem,
        filenames: List[str],
        existing_ids: Iterable[str] = ()
    ) -> ManifestItems:
    """
    Build manifest items for the extra parts of a split chapter.

    The first part replaces the original file and keeps its manifest
    item, so only filenames[1:] get new items.

    Args:
        original_item (ManifestItem): The split chapter's manifest item.
        filenames (list): Part hrefs, as returned by the splitter.
        existing_ids: Ids already used in the package.

    Returns:
        List of new ManifestItem objects, in part order.
    """
    other_ids = [i for i in existing_ids if i != original_item.id]
    ids = generate_unique_ids(original_item.id, len(filenames), other_ids)

    return [
        ManifestItem(id=new_id, href=href, media_type=original_item.media_type)
        for new_id, href in zip(ids[1:], filenames[1:])
    ]
