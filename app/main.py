import logging
import uuid
from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.routers.photos import router as photos_router
from app.routers.classifiers import router as classifiers_router
from app.routers.api import router as api_router

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Occlusion Heatmap",
    description="Classifies photos and explains the results with occlusion-sensitivity heatmaps",
    version="1.0.0"
)


# Simple Session Middleware
class SessionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        session_id = request.cookies.get("session_id")
        created_new = False
        if not session_id:
            session_id = str(uuid.uuid4())
            created_new = True
        # Endpoints read the cookie, and fall back to this for the first request
        request.state.session_id = session_id

        response = await call_next(request)

        if created_new:
            # Set cookie for 1 day
            response.set_cookie(key="session_id", value=session_id, max_age=86400)

        return response


app.add_middleware(SessionMiddleware)

app.include_router(photos_router)
app.include_router(classifiers_router)
app.include_router(api_router)
