import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from memoria_dm.config import get_settings
from memoria_dm.database.connection import close_mongo_connection, connect_to_mongo, get_database
from memoria_dm.routers.chat import router as chat_router
from memoria_dm.routers.conversations import router as conversations_router
from memoria_dm.routers.users import router as users_router
from memoria_dm.utils.exceptions import MessagingError
from memoria_dm.utils.realtime_bus import close_bus


logging.basicConfig(level=get_settings().log_level.upper(), format="[%(asctime)s] %(levelname)s - %(message)s")
logger = logging.getLogger("memoria_dm")


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="Memoria direct messaging", lifespan=lifespan)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(chat_router)
app.include_router(conversations_router)
app.include_router(users_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "Connected to MongoDB!", "collections": collections}
