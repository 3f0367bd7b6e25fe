class DoroFillError(Exception):
    """Base class for every error raised by the filler."""


class InputError(DoroFillError):
    """Missing or malformed caller input (template, document type, page)."""


class PageNotFoundError(InputError):
    def __init__(self, page_index: int, page_count: int) -> None:
        super().__init__(
            f"Page {page_index} out of range. Template has {page_count} page(s)."
        )
        self.page_index = page_index
        self.page_count = page_count


class RenderError(DoroFillError):
    """The text could not be drawn with the available glyphs or fonts."""


class AnalysisError(DoroFillError):
    """Template analysis by the vision model failed."""


class StorageError(DoroFillError):
    """A stored document could not be written."""
