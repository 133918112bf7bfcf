from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for every list endpoint.

    `?page_size=` is honoured up to `max_page_size`; `?page_size=0` is not
    special-cased and falls back to the configured default.
    """

    page_size_query_param = "page_size"
    max_page_size = 500
