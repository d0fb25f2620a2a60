import logging
from asyncio import Semaphore
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Form, HTTPException, BackgroundTasks

from config import JudgeSettings
from judge import Judge
from models import init_db, engine, async_session, JudgeStatus, CLAIMABLE
from sandbox import create_runner
from store import ProblemStore, SubmissionStore, seed_languages

settings = JudgeSettings.from_env()

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Semaphore for concurrent judge limit
judge_semaphore = Semaphore(settings.max_concurrent_judges)


async def startup():
    await init_db(engine)
    added = await seed_languages(async_session)
    if added:
        logger.info(f"Seeded {added} default languages")
    logger.info(f"Sandbox backend: {settings.sandbox_backend}, workers: {settings.max_concurrent_judges}")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    await startup()
    yield


app = FastAPI(title="Online Judge", lifespan=lifespan)


def build_judge() -> Judge:
    return Judge(
        ProblemStore(async_session),
        SubmissionStore(async_session),
        create_runner(settings),
        settings,
    )


def submission_to_dict(s, with_source: bool = False) -> dict:
    data = {
        "id": s.id,
        "problem_id": s.problem_id,
        "language_id": s.programming_language_id,
        "user_id": s.user_id,
        "contest_id": s.contest_id,
        "status": s.status,
        "status_text": s.status_text,
        "time_used": s.time_used,
        "memory_used": s.memory_used,
        "message": s.message,
        "failed_case": s.failed_case,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }
    if with_source:
        data["source_code"] = s.source_code
    return data


async def judge_submission(submission_id: int):
    """Background task to judge a submission"""
    async with judge_semaphore:
        try:
            await build_judge().judge(submission_id)
        except Exception:
            # the judge records its own failures; this catches store or runner setup errors
            logger.exception(f"[Judge #{submission_id}] Worker crashed")


async def enqueue_judging(submission_id: int, background_tasks: BackgroundTasks) -> bool:
    if not await SubmissionStore(async_session).mark_enqueued(submission_id):
        return False
    background_tasks.add_task(judge_submission, submission_id)
    return True


# ===== Submission APIs =====

@app.post("/api/submit")
async def submit(
    background_tasks: BackgroundTasks,
    problem_id: int = Form(...),
    language_id: int = Form(...),
    user_id: int = Form(...),
    code: str = Form(...),
    contest_id: Optional[int] = Form(None),
):
    """Submit code for judging"""
    problems = ProblemStore(async_session)
    if await problems.get_problem(problem_id) is None:
        raise HTTPException(404, "Problem not found")
    if await problems.get_language(language_id) is None:
        raise HTTPException(404, "Language not found")
    if not code.strip():
        raise HTTPException(400, "Source code is empty")

    submission = await SubmissionStore(async_session).create(
        problem_id, language_id, user_id, code, contest_id=contest_id
    )
    logger.info(f"[Judge #{submission.id}] Submitted by user {user_id} for problem {problem_id}")
    await enqueue_judging(submission.id, background_tasks)
    return {"submission_id": submission.id, "status": JudgeStatus.ENQUEUED.value}


@app.post("/api/submissions/{submission_id}/judge")
async def rejudge(submission_id: int, background_tasks: BackgroundTasks):
    """Dispatch a submission that never got picked up"""
    submission = await SubmissionStore(async_session).get(submission_id)
    if not submission:
        raise HTTPException(404, "Submission not found")
    if JudgeStatus(submission.status) not in CLAIMABLE:
        raise HTTPException(400, f"Submission is already {submission.status}")

    if submission.status == JudgeStatus.QUEUED.value:
        await enqueue_judging(submission_id, background_tasks)
    else:
        background_tasks.add_task(judge_submission, submission_id)
    return {"submission_id": submission_id, "status": JudgeStatus.ENQUEUED.value}


@app.get("/api/submissions/{submission_id}")
async def get_submission(submission_id: int):
    """Get submission status and result"""
    submission = await SubmissionStore(async_session).get(submission_id)
    if not submission:
        raise HTTPException(404, "Submission not found")
    return submission_to_dict(submission, with_source=True)


@app.get("/api/submissions")
async def list_submissions(problem_id: Optional[int] = None, limit: int = 50):
    """List recent submissions"""
    if limit < 1:
        raise HTTPException(400, "limit must be positive")
    submissions = await SubmissionStore(async_session).list(problem_id=problem_id, limit=limit)
    return [submission_to_dict(s) for s in submissions]


# ===== Problem APIs =====

@app.post("/api/problems/{problem_id}/test")
async def preview_code(problem_id: int, language_id: int = Form(...), code: str = Form(...)):
    """Run code against the problem's visible examples without submitting"""
    async with judge_semaphore:
        result = await build_judge().preview(problem_id, language_id, code)
    if result is None:
        raise HTTPException(404, "Problem or language not found")
    return result.to_dict()


# ===== Config APIs =====

@app.get("/api/languages")
async def get_languages():
    """Get available languages"""
    languages = await ProblemStore(async_session).list_languages()
    return [
        {
            "id": lang.id,
            "name": lang.name,
            "extension": lang.extension,
            "compiled": lang.compiled,
            "time_limit_sec": lang.time_limit_sec,
            "memory_limit_kb": lang.memory_limit_kb,
        }
        for lang in languages
    ]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
