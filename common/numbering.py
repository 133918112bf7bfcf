import re

from django.conf import settings

TRAILING_COUNTER = re.compile(r"(\d+)$")


def next_document_number(model, field, prefix, *, width=None):
    """Return the next human-readable number for ``model`` (e.g. ``SALE-00042``).

    The counter is taken from the most recently inserted row; a missing or
    malformed previous number restarts the sequence at 1. Uniqueness is
    enforced by the column's unique constraint, not here.
    """
    width = width or getattr(settings, "DOCUMENT_NUMBER_WIDTH", 5)
    last_number = model.objects.order_by("-id").values_list(field, flat=True).first()

    counter = 1
    if last_number:
        match = TRAILING_COUNTER.search(str(last_number))
        if match:
            counter = int(match.group(1)) + 1

    return f"{prefix}-{counter:0{width}d}"
