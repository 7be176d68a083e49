from typing import AsyncGenerator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession


async def get_session(request: Request) -> AsyncGenerator[AsyncSession,None]:
    session_factory = request.app.state.session_factory
    async with session_factory() as session:  # closes the session (and rolls back anything uncommitted) at the end of the request
        yield session


def get_order_service(request: Request):
    return request.app.state.order_service


def get_reconciler(request: Request):
    return request.app.state.reconciler


def get_sweeper(request: Request):
    return request.app.state.sweeper
