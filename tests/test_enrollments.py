import asyncio

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

import courses
import enrollments
from conftest import API, sample_course
from errors import DuplicateEnrollment, ServerError


async def enroll(client, headers, course_id):
    return await client.post(f"{API}/enrollments", json={"courseId": course_id}, headers=headers)


async def complete(client, headers, enrollment_id, index):
    return await client.put(
        f"{API}/enrollments/{enrollment_id}/progress", json={"videoIndex": index}, headers=headers
    )


def summary(response):
    data = response.json()
    return data["completedVideos"], data["totalVideos"], data["completionPercentage"]


class TestEnroll:
    async def test_enroll_starts_empty(self, client, student, course):
        response = await enroll(client, student[0], course["_id"])
        assert response.status_code == 201
        enrollment = response.json()["enrollment"]
        assert enrollment["progress"] == []
        assert enrollment["course"]["_id"] == course["_id"]
        assert enrollment["course"]["instructor"]["name"] == "Ada"
        assert (
            enrollment["completedVideos"],
            enrollment["totalVideos"],
            enrollment["completionPercentage"],
        ) == (0, 3, 0)

    @pytest.mark.parametrize("course_id", [str(ObjectId()), "bogus"])
    async def test_unknown_course(self, client, student, course_id):
        response = await enroll(client, student[0], course_id)
        assert response.status_code == 404

    async def test_duplicate_enrollment(self, client, db, student, course):
        first = await enroll(client, student[0], course["_id"])
        second = await enroll(client, student[0], course["_id"])
        assert first.status_code == 201
        assert second.status_code == 400
        assert second.json()["error"] == "DUPLICATE_ENROLLMENT"
        assert await db["enrollment"].count_documents({}) == 1

    async def test_concurrent_enrollments_leave_one(self, db, student, course):
        student_id = ObjectId(student[1]["_id"])
        results = await asyncio.gather(
            *(enrollments.enroll(db, student_id, course["_id"]) for _ in range(5)),
            return_exceptions=True,
        )
        created = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, DuplicateEnrollment)]
        assert len(created) == 1
        assert len(rejected) == 4
        assert await db["enrollment"].count_documents({"student": student_id}) == 1

    async def test_instructor_cannot_enroll(self, client, instructor, course):
        response = await enroll(client, instructor[0], course["_id"])
        assert response.status_code == 403

    async def test_listing_is_most_recent_first(self, client, instructor, student, course):
        second = await client.post(
            f"{API}/courses", json=sample_course(title="Kubernetes"), headers=instructor[0]
        )
        await enroll(client, student[0], course["_id"])
        await enroll(client, student[0], second.json()["course"]["_id"])

        response = await client.get(f"{API}/enrollments", headers=student[0])
        titles = [e["course"]["title"] for e in response.json()["enrollments"]]
        assert titles == ["Kubernetes", course["title"]]

    async def test_listing_only_shows_own_enrollments(self, client, student, other_student, course):
        await enroll(client, student[0], course["_id"])
        response = await client.get(f"{API}/enrollments", headers=other_student[0])
        assert response.json()["enrollments"] == []


class TestProgress:
    async def test_completion_scenario(self, client, student, course):
        enrollment = (await enroll(client, student[0], course["_id"])).json()["enrollment"]
        enrollment_id = enrollment["_id"]
        assert enrollment["completionPercentage"] == 0

        assert summary(await complete(client, student[0], enrollment_id, 1)) == (1, 3, 33)
        assert summary(await complete(client, student[0], enrollment_id, 1)) == (1, 3, 33)
        await complete(client, student[0], enrollment_id, 0)
        assert summary(await complete(client, student[0], enrollment_id, 2)) == (3, 3, 100)

        listed = (await client.get(f"{API}/enrollments", headers=student[0])).json()["enrollments"]
        assert sorted(listed[0]["progress"]) == [0, 1, 2]
        assert listed[0]["completionPercentage"] == 100

    async def test_marking_twice_leaves_progress_unchanged(self, client, db, student, course):
        enrollment_id = (await enroll(client, student[0], course["_id"])).json()["enrollment"]["_id"]
        await complete(client, student[0], enrollment_id, 2)
        await complete(client, student[0], enrollment_id, 2)
        stored = await db["enrollment"].find_one({"_id": ObjectId(enrollment_id)})
        assert stored["progress"] == [2]

    @pytest.mark.parametrize("index", [True, "1", 1.5, None])
    async def test_non_integer_index_is_rejected(self, client, db, student, course, index):
        enrollment_id = (await enroll(client, student[0], course["_id"])).json()["enrollment"]["_id"]
        response = await complete(client, student[0], enrollment_id, index)
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"
        stored = await db["enrollment"].find_one({"_id": ObjectId(enrollment_id)})
        assert stored["progress"] == []

    @pytest.mark.parametrize("index", [-1, 3, 99])
    async def test_out_of_range_index(self, client, db, student, course, index):
        enrollment_id = (await enroll(client, student[0], course["_id"])).json()["enrollment"]["_id"]
        response = await complete(client, student[0], enrollment_id, index)
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_VIDEO_INDEX"
        stored = await db["enrollment"].find_one({"_id": ObjectId(enrollment_id)})
        assert stored["progress"] == []

    async def test_other_students_enrollment_looks_missing(self, client, student, other_student, course):
        enrollment_id = (await enroll(client, student[0], course["_id"])).json()["enrollment"]["_id"]
        foreign = await complete(client, other_student[0], enrollment_id, 0)
        missing = await complete(client, other_student[0], str(ObjectId()), 0)
        assert foreign.status_code == missing.status_code == 404
        assert foreign.json() == missing.json()

    async def test_derived_fields_follow_course_edits(self, client, db, instructor, student, course):
        enrollment_id = (await enroll(client, student[0], course["_id"])).json()["enrollment"]["_id"]
        for index in (0, 2):
            await complete(client, student[0], enrollment_id, index)

        shrunk = sample_course(videos=[{"title": "Intro", "youtubeId": "dQw4w9WgXcQ"},
                                       {"title": "Images", "youtubeId": "abcdefghijk"}])
        await client.put(f"{API}/courses/{course['_id']}", json=shrunk, headers=instructor[0])

        listed = (await client.get(f"{API}/enrollments", headers=student[0])).json()["enrollments"]
        assert (listed[0]["completedVideos"], listed[0]["totalVideos"]) == (1, 2)
        assert listed[0]["completionPercentage"] == 50
        # stale index 2 is kept in storage
        stored = await db["enrollment"].find_one({"_id": ObjectId(enrollment_id)})
        assert sorted(stored["progress"]) == [0, 2]


class _FlakyCollection:
    def __init__(self, collection, failures):
        self._collection = collection
        self.failures = failures

    async def delete_many(self, *args, **kwargs):
        if self.failures > 0:
            self.failures -= 1
            raise AutoReconnect("connection reset")
        return await self._collection.delete_many(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._collection, name)


class _FlakyDatabase:
    def __init__(self, db, failures):
        self._db = db
        self.enrollments = _FlakyCollection(db["enrollment"], failures)

    def __getitem__(self, name):
        return self.enrollments if name == "enrollment" else self._db[name]


class TestCascade:
    async def _setup(self, db, instructor, student):
        instructor_id = ObjectId(instructor[1]["_id"])
        course = await courses.create_course(db, instructor_id, sample_course())
        await enrollments.enroll(db, ObjectId(student[1]["_id"]), course["_id"])
        return instructor_id, course

    async def test_transient_failure_is_retried(self, db, instructor, student):
        instructor_id, course = await self._setup(db, instructor, student)
        removed = await courses.delete_course(_FlakyDatabase(db, failures=1), course["_id"], instructor_id)
        assert removed == 1
        assert await db["enrollment"].count_documents({}) == 0

    async def test_unconfirmed_cascade_fails_and_purge_cleans_up(self, db, instructor, student):
        instructor_id, course = await self._setup(db, instructor, student)
        with pytest.raises(ServerError):
            await courses.delete_course(_FlakyDatabase(db, failures=10), course["_id"], instructor_id)

        assert await db["course"].count_documents({}) == 0
        assert await db["enrollment"].count_documents({}) == 1
        # orphans are never listed
        assert await enrollments.list_enrollments(db, ObjectId(student[1]["_id"])) == []

        assert await courses.purge_orphaned_enrollments(db) == 1
        assert await db["enrollment"].count_documents({}) == 0

    async def test_purge_keeps_live_enrollments(self, db, instructor, student):
        await self._setup(db, instructor, student)
        assert await courses.purge_orphaned_enrollments(db) == 0
        assert await db["enrollment"].count_documents({}) == 1
