from bs4.element import PageElement
from pydantic import BaseModel, ConfigDict, model_validator
from typing import List, Literal, Optional


ContentType = Literal["text", "image", "whitespace"]
SkipReason = Literal["exempt_filename", "no_split_needed", "split_not_beneficial"]

XHTML_MEDIA_TYPE = "application/xhtml+xml"

class ContentBlock(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    content_type: ContentType
    nodes: List[PageElement] = []

class SplitResult(BaseModel):
    success: bool
    skipped: bool = False
    reason: Optional[SkipReason] = None
    error: Optional[str] = None
    contents: List[str] = []
    filenames: List[str] = []
    original_filename: str
    original_content: Optional[str] = None

    @property
    def split_count(self) -> int:
        return len(self.contents)

    @model_validator(mode="after")
    def check_parts(self):
        if self.success and not self.skipped:
            if len(self.contents) != len(self.filenames):
                raise ValueError(
                    f"Got {len(self.contents)} contents but {len(self.filenames)} filenames."
                )
            if len(self.contents) < 2:
                raise ValueError("A split result needs at least two parts.")
            if self.filenames[0] != self.original_filename:
                raise ValueError("The first part must keep the original filename.")
        return self

class ManifestItem(BaseModel):
    id: str
    href: str
    media_type: str = XHTML_MEDIA_TYPE
    properties: Optional[str] = None

class SpineItemref(BaseModel):
    idref: str
    linear: str = "yes"

class ValidationReport(BaseModel):
    valid: bool
    missing: List[str] = []
    error: Optional[str] = None

class PackageUpdateResult(BaseModel):
    success: bool
    content: str
    error: Optional[str] = None

ContentBlocks = List[ContentBlock]
ManifestItems = List[ManifestItem]
