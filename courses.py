"""
Course management: instructor-owned courses with an ordered list of videos.

Every write is scoped to the owning instructor. A course that does not exist
and a course owned by someone else produce the same NotFoundOrForbidden.
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError as SchemaError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from config import get_settings
from database import (
    COURSES,
    ENROLLMENTS,
    USERS,
    create_document,
    get_documents,
    parse_object_id,
    to_public,
    utcnow_iso,
)
from errors import NotFoundError, NotFoundOrForbidden, ServerError, ValidationError
from schemas import CourseIn

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("createdAt", DESCENDING), ("_id", DESCENDING)]
COURSE_NOT_FOUND = "Course not found"
COURSE_NOT_OWNED = "Course not found or access denied"


def _coerce_course(payload: Union[CourseIn, Mapping[str, Any]]) -> CourseIn:
    if isinstance(payload, CourseIn):
        return payload
    try:
        return CourseIn.model_validate(payload)
    except SchemaError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"{field}: {first['msg']}")


def _course_fields(course: CourseIn) -> Dict[str, Any]:
    return {
        "title": course.title,
        "description": course.description,
        "category": course.category,
        "videos": [video.model_dump() for video in course.videos],
    }


async def instructor_names(
    db: AsyncIOMotorDatabase, instructor_ids: Iterable[ObjectId]
) -> Dict[ObjectId, str]:
    ids = list({i for i in instructor_ids if i is not None})
    if not ids:
        return {}
    users = await get_documents(db, USERS, {"_id": {"$in": ids}}, projection={"name": 1})
    return {user["_id"]: user.get("name") for user in users}


def serialize_course(course: Dict[str, Any], names: Mapping[ObjectId, str]) -> Dict[str, Any]:
    instructor_id = course.get("instructor")
    doc = to_public(course)
    doc["instructor"] = {
        "_id": str(instructor_id) if instructor_id is not None else None,
        "name": names.get(instructor_id),
    }
    return doc


async def populate_courses(
    db: AsyncIOMotorDatabase, courses: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    names = await instructor_names(db, (course.get("instructor") for course in courses))
    return [serialize_course(course, names) for course in courses]


async def create_course(
    db: AsyncIOMotorDatabase,
    instructor_id: ObjectId,
    payload: Union[CourseIn, Mapping[str, Any]],
) -> Dict[str, Any]:
    course_in = _coerce_course(payload)
    created = await create_document(
        db, COURSES, {**_course_fields(course_in), "instructor": instructor_id}
    )
    logger.info("Instructor %s created course %s", instructor_id, created["_id"])
    return (await populate_courses(db, [created]))[0]


async def update_course(
    db: AsyncIOMotorDatabase,
    course_id: str,
    instructor_id: ObjectId,
    payload: Union[CourseIn, Mapping[str, Any]],
) -> Dict[str, Any]:
    oid = parse_object_id(course_id)
    if oid is None:
        raise NotFoundOrForbidden(COURSE_NOT_OWNED)
    course_in = _coerce_course(payload)
    updates = {**_course_fields(course_in), "updatedAt": utcnow_iso()}
    updated = await db[COURSES].find_one_and_update(
        {"_id": oid, "instructor": instructor_id},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFoundOrForbidden(COURSE_NOT_OWNED)
    logger.info("Instructor %s updated course %s", instructor_id, oid)
    return (await populate_courses(db, [updated]))[0]


async def _remove_enrollments(db: AsyncIOMotorDatabase, course_id: ObjectId) -> int:
    """Delete enrollments of a course until none remain, retrying on failure."""
    attempts = get_settings().CASCADE_MAX_ATTEMPTS
    removed = 0
    for attempt in range(1, attempts + 1):
        try:
            result = await db[ENROLLMENTS].delete_many({"course": course_id})
            removed += result.deleted_count
            remaining = await db[ENROLLMENTS].count_documents({"course": course_id})
        except PyMongoError as exc:
            logger.warning(
                "Enrollment cleanup for course %s failed (attempt %d/%d): %s",
                course_id, attempt, attempts, exc,
            )
            continue
        if remaining == 0:
            return removed
        logger.warning(
            "%d enrollments still reference course %s (attempt %d/%d)",
            remaining, course_id, attempt, attempts,
        )
    raise ServerError("Course deleted but related enrollments could not be removed")


async def delete_course(
    db: AsyncIOMotorDatabase, course_id: str, instructor_id: ObjectId
) -> int:
    """Delete an owned course and every enrollment in it.

    The course goes first so no new enrollment can target it, then the
    enrollments are swept and the sweep is verified. If the sweep cannot be
    confirmed the call fails; purge_orphaned_enrollments() finishes the job.
    Returns the number of enrollments removed.
    """
    oid = parse_object_id(course_id)
    if oid is None:
        raise NotFoundOrForbidden(COURSE_NOT_OWNED)
    result = await db[COURSES].delete_one({"_id": oid, "instructor": instructor_id})
    if result.deleted_count == 0:
        raise NotFoundOrForbidden(COURSE_NOT_OWNED)
    removed = await _remove_enrollments(db, oid)
    logger.info(
        "Instructor %s deleted course %s and %d enrollments", instructor_id, oid, removed
    )
    return removed


async def purge_orphaned_enrollments(db: AsyncIOMotorDatabase) -> int:
    """Remove enrollments whose course no longer exists."""
    referenced = await db[ENROLLMENTS].distinct("course")
    if not referenced:
        return 0
    existing = set(await db[COURSES].distinct("_id", {"_id": {"$in": referenced}}))
    orphaned = [course_id for course_id in referenced if course_id not in existing]
    if not orphaned:
        return 0
    result = await db[ENROLLMENTS].delete_many({"course": {"$in": orphaned}})
    logger.warning(
        "Purged %d orphaned enrollments for %d deleted courses",
        result.deleted_count, len(orphaned),
    )
    return result.deleted_count


async def list_courses_by_instructor(
    db: AsyncIOMotorDatabase, instructor_id: ObjectId
) -> List[Dict[str, Any]]:
    courses = await get_documents(db, COURSES, {"instructor": instructor_id}, sort=NEWEST_FIRST)
    populated = await populate_courses(db, courses)
    for raw, course in zip(courses, populated):
        course["enrollmentCount"] = await db[ENROLLMENTS].count_documents({"course": raw["_id"]})
    return populated


async def list_courses(
    db: AsyncIOMotorDatabase, category: Optional[str] = None
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if category:
        query["category"] = category
    courses = await get_documents(db, COURSES, query, sort=NEWEST_FIRST)
    return await populate_courses(db, courses)


async def find_course(db: AsyncIOMotorDatabase, course_id: Any) -> Optional[Dict[str, Any]]:
    oid = parse_object_id(course_id)
    if oid is None:
        return None
    return await db[COURSES].find_one({"_id": oid})


async def get_course(db: AsyncIOMotorDatabase, course_id: str) -> Dict[str, Any]:
    course = await find_course(db, course_id)
    if course is None:
        raise NotFoundError(COURSE_NOT_FOUND)
    return (await populate_courses(db, [course]))[0]


async def list_categories(db: AsyncIOMotorDatabase) -> List[Dict[str, Any]]:
    pipeline = [
        {"$group": {"_id": "$category", "count": {"$sum": 1}}},
        {"$project": {"_id": 0, "name": "$_id", "count": 1}},
        {"$sort": {"count": -1, "name": 1}},
    ]
    categories = []
    async for row in db[COURSES].aggregate(pipeline):
        categories.append({"name": row["name"], "count": row["count"]})
    return categories
