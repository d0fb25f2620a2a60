"""
Remote judge client: submits code to a running judge over its HTTP API and
waits for the verdict. Batches run on a thread pool with a progress bar.
"""
import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional

import aiohttp
from tqdm import tqdm

logger = logging.getLogger(__name__)

PENDING_STATUSES = {"queued", "enqueued", "compiling", "running"}
ACCEPTED = "accepted"


def error_result(message: str) -> Dict:
    return {
        "success": False,
        "verdict": "error",
        "message": message,
        "time": 0,
        "memory": 0,
        "passed": False,
        "failed_test": None,
    }


def normalize_result(payload: Dict, submission_id: int, elapsed: float) -> Dict:
    """Flatten a submission payload into the client's result shape."""
    status = payload.get("status")
    return {
        "success": True,
        "verdict": status,
        "status_text": payload.get("status_text", status),
        "message": payload.get("message") or "",
        "time": payload.get("time_used") or 0,
        "memory": payload.get("memory_used") or 0,
        "passed": status == ACCEPTED,
        "failed_test": payload.get("failed_case"),
        "submission_id": submission_id,
        "total_time": elapsed,
    }


class RemoteJudgeClient:
    def __init__(self, base_url: str = "http://localhost:8000", max_workers: Optional[int] = None,
                 poll_interval: float = 0.5, max_wait: float = 300):
        """
        Args:
            base_url: judge server address
            max_workers: thread pool size for batches, None for the executor default
            poll_interval: seconds between status queries
            max_wait: give up on a submission after this many seconds
        """
        self.base_url = base_url.rstrip("/")
        self.submit_url = f"{self.base_url}/api/submit"
        self.query_url = f"{self.base_url}/api/submissions"
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.max_wait = max_wait

    async def submit_code_async(self, problem_id: int, code: str, language_id: int,
                                user_id: int = 1, contest_id: Optional[int] = None) -> Dict:
        """Submit code and wait until the judge reports a final status."""
        async with aiohttp.ClientSession() as session:
            data = aiohttp.FormData()
            data.add_field("problem_id", str(problem_id))
            data.add_field("language_id", str(language_id))
            data.add_field("user_id", str(user_id))
            data.add_field("code", code)
            if contest_id is not None:
                data.add_field("contest_id", str(contest_id))

            try:
                async with session.post(self.submit_url, data=data) as response:
                    result = await response.json()
            except (aiohttp.ClientError, ValueError) as e:
                return error_result(f"Submit failed: {e}")

            submission_id = result.get("submission_id")
            if not submission_id:
                return error_result(f"Failed to get submission_id: {result.get('detail', result)}")

            start_time = time.time()
            while True:
                try:
                    async with session.get(f"{self.query_url}/{submission_id}") as response:
                        result = await response.json()
                except (aiohttp.ClientError, ValueError) as e:
                    return error_result(f"Query failed: {e}")

                elapsed = time.time() - start_time
                if result.get("status") not in PENDING_STATUSES:
                    return normalize_result(result, submission_id, elapsed)
                if elapsed > self.max_wait:
                    return error_result(f"Submission {submission_id} still {result.get('status')} "
                                        f"after {self.max_wait}s")
                await asyncio.sleep(self.poll_interval)

    def submit_code(self, problem_id: int, code: str, language_id: int, user_id: int = 1) -> Dict:
        """Blocking wrapper around submit_code_async, safe to call from worker threads."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(
                self.submit_code_async(problem_id, code, language_id, user_id)
            )
        finally:
            loop.close()

    def batch_submit(self, problem_id: int, batch_code: List[str], language_id: int,
                     user_id: int = 1, use_multithreading: bool = True) -> Dict:
        """Submit every snippet in batch_code and count how many were accepted."""
        code_cnt = len(batch_code)
        results = [None] * code_cnt

        if use_multithreading and code_cnt > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                future_to_idx = {
                    executor.submit(self.submit_code, problem_id, code, language_id, user_id): idx
                    for idx, code in enumerate(batch_code)
                }
                with tqdm(total=code_cnt, desc=f"Submitting {problem_id}") as pbar:
                    for future in as_completed(future_to_idx):
                        results[future_to_idx[future]] = future.result()
                        pbar.update(1)
        else:
            for idx, code in enumerate(tqdm(batch_code, desc=f"Submitting {problem_id}")):
                results[idx] = self.submit_code(problem_id, code, language_id, user_id)

        return summarize(batch_code, results)


def summarize(batch_code: List[str], results: List[Dict]) -> Dict:
    passed = [
        {"index": idx, "code": code, "result": result}
        for idx, (code, result) in enumerate(zip(batch_code, results))
        if result["passed"]
    ]
    error_cnt = sum(1 for result in results if not result["success"])
    valid_cnt = len(results) - error_cnt
    for idx, result in enumerate(results):
        if not result["success"]:
            logger.warning(f"Submission {idx}: {result['message']}")

    return {
        "total": len(results),
        "errors": error_cnt,
        "accepted": len(passed),
        "acceptance_rate": len(passed) / valid_cnt if valid_cnt else 0.0,
        "passed_submissions": passed,
    }


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    client = RemoteJudgeClient(base_url="http://localhost:8000", max_workers=8)

    code_file = Path("solution.py")
    if code_file.exists():
        code = code_file.read_text(encoding="utf-8")
        result = client.submit_code(problem_id=1, code=code, language_id=1)

        print(f"Verdict: {result.get('status_text', result['verdict'])}")
        print(f"Time: {result['time']}s")
        print(f"Failed Test: {result.get('failed_test') or 'N/A'}")
    else:
        print(f"Error: {code_file} not found")
