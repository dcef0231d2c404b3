from dataclasses import dataclass

from fastapi import Query, Request

from marketplace.config import settings


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


@dataclass(frozen=True)
class PageParams:
    page: int
    page_size: int


def get_page_params(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
) -> PageParams:
    return PageParams(page=page, page_size=min(page_size, settings.payment_list_max_page_size))
