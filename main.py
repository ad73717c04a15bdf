import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Iterable, List, Union
from urllib.parse import unquote

from chapter_splitter import DEFAULT_EXEMPT_FILENAMES, process_chapter
from epub_parts import SplitResult, XHTML_MEDIA_TYPE
from opf_editor import (
    collect_document_ids,
    list_manifest_items,
    list_spine_items,
    plan_split_manifest_items,
    update_manifest_and_spine,
    validate_opf_structure
    )


logger = logging.getLogger(__name__)

class InvalidPackageError(RuntimeError):
    """Raised when the OPF package file is missing required elements."""
    pass


def write_report_to_json_file(results: List[SplitResult], output_filepath: Union[str, Path]):
    """
    Serialize split results (without document bodies) and save in JSON file.
    """
    with open(str(output_filepath), 'w') as f:
        json.dump(
            [r.model_dump(mode="json", exclude={"contents", "original_content"}) for r in results],
            f,
            indent=2
        )


def resolve_chapter_path(opf_dir: Path, href: str) -> Path:
    return opf_dir / unquote(href)


def split_package_chapters(
        opf_filepath: Union[str, Path],
        exempt_filenames: Iterable[str] = DEFAULT_EXEMPT_FILENAMES,
        dry_run: bool = False
    ) -> List[SplitResult]:
    """
    Split every XHTML chapter in the spine of an unpacked EPUB.

    Part files are only written once the in-memory OPF has been updated
    for them; a chapter whose split or OPF update fails stays as it was.
    The OPF file is written once, at the end.

    Args:
        opf_filepath: Path to the OPF package file.
        exempt_filenames: Chapter base names that are never split.
        dry_run (bool): Report what would be split without writing files.

    Returns:
        List of SplitResult, one per spine chapter processed.

    Raises:
        InvalidPackageError: If the OPF is malformed or incomplete.
    """
    opf_filepath = Path(opf_filepath)
    opf_dir = opf_filepath.parent
    opf_content = opf_filepath.read_text(encoding='utf-8')

    report = validate_opf_structure(opf_content)
    if not report.valid:
        raise InvalidPackageError(report.error)

    manifest_items = {item.id: item for item in list_manifest_items(opf_content)}
    existing_ids = collect_document_ids(opf_content)
    existing_hrefs = {item.href for item in manifest_items.values()}
    results: List[SplitResult] = []
    opf_changed = False

    for itemref in list_spine_items(opf_content):
        item = manifest_items.get(itemref.idref)
        if item is None or item.media_type != XHTML_MEDIA_TYPE:
            continue

        chapter_filepath = resolve_chapter_path(opf_dir, item.href)
        if not chapter_filepath.is_file():
            logger.warning(f"File doesn't exist. Skipping chapter: {item.href}")
            continue

        chapter_content = chapter_filepath.read_text(encoding='utf-8')
        result = process_chapter(chapter_content, item.href, exempt_filenames)
        results.append(result)

        if not result.success:
            print(f"Could not split {item.href}, leaving it unchanged: {result.error}")
            continue
        if result.skipped:
            logger.info(f"Skipped {item.href} ({result.reason})")
            continue

        taken_hrefs = [f for f in result.filenames[1:] if f in existing_hrefs]
        if taken_hrefs:
            print(f"Could not split {item.href}, part names already in use: {', '.join(taken_hrefs)}")
            continue

        new_items = plan_split_manifest_items(item, result.filenames, existing_ids)
        update = update_manifest_and_spine(opf_content, item.id, new_items)
        if not update.success:
            print(f"Could not update the OPF for {item.href}, leaving it unchanged: {update.error}")
            continue

        opf_content = update.content
        opf_changed = True
        existing_ids.update(new_item.id for new_item in new_items)
        existing_hrefs.update(new_item.href for new_item in new_items)
        print(f"Split {item.href} into {result.split_count} parts.")

        if not dry_run:
            for filename, part_content in zip(result.filenames, result.contents):
                resolve_chapter_path(opf_dir, filename).write_text(part_content, encoding='utf-8')

    if opf_changed and not dry_run:
        opf_filepath.write_text(opf_content, encoding='utf-8')

    return results


def main():
    parser = argparse.ArgumentParser(description="Script for splitting the chapters of an unpacked EPUB at text/image boundaries.")
    parser.add_argument("opf_path", help="Path to the OPF package file of an unpacked EPUB")
    parser.add_argument("--exempt", action="append", default=[], help="Additional chapter filename that should never be split, e.g. `preface.xhtml`. May be given more than once. Navigation, contents, title, author and cover pages are always exempt.")
    parser.add_argument("--dry-run", action="store_true", help="Report which chapters would be split without writing any files.")
    parser.add_argument("--report", default=None, help="Provide the path to an optional JSON file where the outcome for each chapter is written.")
    parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation before editing files in place.")
    parser.add_argument("--verbose", action="store_true", help="Log every chapter decision.")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s"
    )

    if not (args.yes or args.dry_run):
        if not input("This script edits chapter files and the OPF file in place. It should only be run on a copy of the unpacked EPUB. Do you wish to continue (y/n)? ").strip().lower() in ['y', 'yes']:
            print("Exiting!")
            sys.exit(0)

    opf_filepath = Path(args.opf_path)
    if (
        not opf_filepath.exists() or
        not opf_filepath.is_file() or
        opf_filepath.suffix[1:].lower() != 'opf'
        ):
        raise ValueError("OPF path must point to a valid package (.opf) file.")

    exempt_filenames = DEFAULT_EXEMPT_FILENAMES | set(args.exempt)

    try:
        results = split_package_chapters(opf_filepath, exempt_filenames, dry_run=args.dry_run)
    except InvalidPackageError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    if args.report:
        write_report_to_json_file(results, args.report)
        print(f"Report written to {args.report}")

    split_count = sum(1 for r in results if r.success and not r.skipped)
    print(f"Script completed. {split_count} chapter(s) split.")


if __name__ == '__main__':
    main()
