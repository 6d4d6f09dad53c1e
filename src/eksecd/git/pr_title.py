"""Pull-request title length handling."""

from __future__ import annotations

from dataclasses import dataclass

MAX_TITLE_LENGTH = 256
ELLIPSIS = "..."
OVERFLOW_SEPARATOR = "\n\n---\n\n"


@dataclass(slots=True, frozen=True)
class PRTitle:
    title: str
    description_prefix: str = ""

    def apply(self, description: str) -> str:
        """Return ``description`` with the title overflow prepended."""

        return self.description_prefix + description


def truncate_pr_title(title: str) -> PRTitle:
    """Fit ``title`` to the hosting platform's limit.

    Overlong titles keep their first 253 characters plus an ellipsis; the cut
    text becomes a prefix for the description.
    """

    if len(title) <= MAX_TITLE_LENGTH:
        return PRTitle(title=title)
    cut = MAX_TITLE_LENGTH - len(ELLIPSIS)
    return PRTitle(
        title=title[:cut] + ELLIPSIS,
        description_prefix=title[cut:] + OVERFLOW_SEPARATOR,
    )


__all__ = ["MAX_TITLE_LENGTH", "OVERFLOW_SEPARATOR", "PRTitle", "truncate_pr_title"]
