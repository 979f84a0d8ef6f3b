import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

import courses
import enrollments
from config import get_settings
from database import close_db, ensure_indexes, get_db
from errors import register_error_handlers
from logging_config import setup_logging
from schemas import AuthResponse, CourseIn, EnrollmentCreate, LoginRequest, ProgressUpdate, Token, UserCreate
from security import (
    auth_payload,
    authenticate_user,
    create_access_token,
    get_current_instructor,
    get_current_student,
    get_current_user,
    public_user,
    register_user,
)

settings = get_settings()
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting LearnTube API")
    if settings.uses_default_secret:
        logger.warning("JWT_SECRET is not set; using the development secret")
    db = get_db()
    try:
        await ensure_indexes(db)
        await courses.purge_orphaned_enrollments(db)
    except PyMongoError as exc:
        logger.error("Database initialisation failed: %s", exc)
    yield
    close_db()
    logger.info("LearnTube API stopped")


app = FastAPI(title="LearnTube API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)

router = APIRouter(prefix=settings.API_PREFIX)


@app.get("/")
async def root():
    return {"ok": True, "service": "learntube-api"}


@app.get("/health")
async def health(db: AsyncIOMotorDatabase = Depends(get_db)):
    # Verify db connection on demand
    try:
        await db.command("ping")
    except PyMongoError as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable", "database": "unreachable"},
        )
    return {"status": "ok", "database": "connected"}


# Auth routes
@router.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(user_in: UserCreate, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await register_user(db, user_in)


@router.post("/auth/login", response_model=AuthResponse)
async def login(credentials: LoginRequest, db: AsyncIOMotorDatabase = Depends(get_db)):
    user = await authenticate_user(db, credentials.email, credentials.password)
    return auth_payload(user)


@router.post("/auth/token", response_model=Token)
async def login_form(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    user = await authenticate_user(db, form_data.username.strip(), form_data.password)
    return {"access_token": create_access_token(str(user["_id"])), "token_type": "bearer"}


@router.get("/auth/user")
async def me(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {"user": public_user(current_user)}


# Courses
@router.post("/courses", status_code=status.HTTP_201_CREATED)
async def create_course(
    course: CourseIn,
    instructor: Dict[str, Any] = Depends(get_current_instructor),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    created = await courses.create_course(db, instructor["_id"], course)
    return {"message": "Course created successfully", "course": created}


@router.get("/courses/instructor")
async def instructor_courses(
    instructor: Dict[str, Any] = Depends(get_current_instructor),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return {"courses": await courses.list_courses_by_instructor(db, instructor["_id"])}


@router.get("/courses")
async def list_courses(category: Optional[str] = None, db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"courses": await courses.list_courses(db, category)}


@router.get("/courses/{course_id}")
async def get_course(course_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"course": await courses.get_course(db, course_id)}


@router.put("/courses/{course_id}")
async def update_course(
    course_id: str,
    course: CourseIn,
    instructor: Dict[str, Any] = Depends(get_current_instructor),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    updated = await courses.update_course(db, course_id, instructor["_id"], course)
    return {"message": "Course updated successfully", "course": updated}


@router.delete("/courses/{course_id}")
async def delete_course(
    course_id: str,
    instructor: Dict[str, Any] = Depends(get_current_instructor),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    await courses.delete_course(db, course_id, instructor["_id"])
    return {"message": "Course and related enrollments deleted successfully"}


# Enrollments
@router.post("/enrollments", status_code=status.HTTP_201_CREATED)
async def enroll(
    payload: EnrollmentCreate,
    student: Dict[str, Any] = Depends(get_current_student),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    enrollment = await enrollments.enroll(db, student["_id"], payload.courseId)
    return {"message": "Successfully enrolled in course", "enrollment": enrollment}


@router.get("/enrollments")
async def list_enrollments(
    student: Dict[str, Any] = Depends(get_current_student),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return {"enrollments": await enrollments.list_enrollments(db, student["_id"])}


@router.put("/enrollments/{enrollment_id}/progress")
async def update_progress(
    enrollment_id: str,
    payload: ProgressUpdate,
    student: Dict[str, Any] = Depends(get_current_student),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    summary = await enrollments.mark_video_completed(
        db, enrollment_id, student["_id"], payload.videoIndex
    )
    return {"message": "Progress updated successfully", **summary}


# Categories
@router.get("/categories")
async def list_categories(db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"categories": await courses.list_categories(db)}


app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
