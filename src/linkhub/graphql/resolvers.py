"""
Resolvers for the link schema.

Each root field delegates to one ``LinkStore`` operation. Object fields of
``Link`` and ``LinkEvent`` have no resolvers: records are plain dicts and are
read by key.
"""

from typing import Annotated, Any, AsyncGenerator, Dict, List, Optional

import strawberry
from strawberry.types import Info

from linkhub.core.logging import get_logger
from linkhub.graphql.context import GatewayContext
from linkhub.store.base import Record

logger = get_logger(__name__)


async def resolve_links(info: Info) -> Optional[List[Record]]:
    """All links, oldest first."""
    context: GatewayContext = info.context
    return await context.store.list_links()


async def resolve_link(
    info: Info,
    link_id: Annotated[str, strawberry.argument(name="id")],
) -> Optional[Record]:
    context: GatewayContext = info.context
    return await context.store.get_link(link_id)


async def create_link(
    info: Info,
    title: str,
    url: str,
    description: Optional[str] = None,
    category: Optional[str] = None,
    image_url: Annotated[Optional[str], strawberry.argument(name="imageUrl")] = None,
    users: Optional[List[Optional[str]]] = None,
) -> Optional[Record]:
    context: GatewayContext = info.context
    record = await context.store.create_link(
        title=title,
        url=url,
        description=description,
        category=category,
        image_url=image_url,
        users=[user for user in users or [] if user is not None],
    )
    logger.info("Link created", link_id=record["id"], request_id=context.request_id)
    return record


async def delete_link(
    info: Info,
    link_id: Annotated[str, strawberry.argument(name="id")],
) -> Optional[Record]:
    context: GatewayContext = info.context
    record = await context.store.delete_link(link_id)
    if record is not None:
        logger.info("Link deleted", link_id=link_id, request_id=context.request_id)
    return record


async def subscribe_links(info: Info) -> AsyncGenerator[List[Record], None]:
    """
    Stream the full list of links: once on subscribe, then after every change.

    The event stream is opened before the first read so no change between the
    snapshot and the subscription can be missed.
    """
    context: GatewayContext = info.context
    async with context.events.subscribe() as stream:
        yield await context.store.list_links()
        async for _event in stream:
            yield await context.store.list_links()


async def subscribe_link_events(info: Info) -> AsyncGenerator[Dict[str, Any], None]:
    context: GatewayContext = info.context
    async with context.events.subscribe() as stream:
        async for event in stream:
            yield event.to_record()


RESOLVERS = {
    "Query": {
        "links": resolve_links,
        "link": resolve_link,
    },
    "Mutation": {
        "createLink": create_link,
        "deleteLink": delete_link,
    },
    "Subscription": {
        "links": subscribe_links,
        "linkEvents": subscribe_link_events,
    },
}
