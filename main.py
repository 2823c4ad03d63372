# coding_sandbox/main.py
import asyncio

from di_container import main_injector
from errors import CodingSandboxError
from jobs.models import Job
from jobs.service import JobService
from jobs.state_machine import is_terminal
from sandbox_manager.service import SandboxManagerService


def print_new_logs(job: Job, printed: int) -> int:
    for entry in job.logs[printed:]:
        print(f"[{entry.timestamp:%H:%M:%S}] {entry.type.value:<7} {entry.message}")
    return len(job.logs)


async def follow_job(job_service: JobService, job_id: str, poll_interval: float = 0.5) -> Job:
    """ジョブが終端状態になるまでログを表示し続けます。"""
    printed = 0
    while True:
        job = await job_service.get_status(job_id)
        printed = print_new_logs(job, printed)
        if is_terminal(job.status):
            return job
        await asyncio.sleep(poll_interval)


async def main():
    print("Starting Coding Sandbox...")

    sandbox_manager_service = main_injector.get(SandboxManagerService)
    job_service = main_injector.get(JobService)

    # --- 初期化フェーズの開始 ---
    print("Initializing system... Cleaning up old sandboxes.")
    failures = await sandbox_manager_service.cleanup_all_containers()
    for failure in failures:
        print(f"  Could not remove {failure.container_name}: {failure.error}")
    print("Initialization complete.")
    # --- 初期化フェーズの終了 ---

    print("Describe the project you want to build. Type 'exit' or 'quit' to end the session.")
    print("After a job completes, run commands in its workspace with '!<command>'.")

    current_job_id = None
    while True:
        try:
            user_input = await asyncio.to_thread(input, "\nTask: ")  # 同期I/Oを非同期コンテキストで実行
            if user_input.lower() in ["exit", "quit"]:
                print("Ending session.")
                break
            if not user_input.strip():
                continue

            if user_input.startswith("!"):
                if current_job_id is None:
                    print("No completed job yet.")
                    continue
                execution = await job_service.execute_command(current_job_id, user_input[1:].strip())
                print(execution.output, end="" if execution.output.endswith("\n") else "\n")
                print(f"(exit code {execution.exit_code}, {execution.duration:.0f} ms)")
                continue

            job_id = await job_service.schedule(user_input)
            print(f"Scheduled job {job_id}")
            job = await follow_job(job_service, job_id)
            print(f"\nJob {job_id} finished with status {job.status.value}.")
            if job.download_url:
                current_job_id = job_id
                print(f"Download: {job.download_url}")
        except CodingSandboxError as e:
            print(f"\nError: {e}")
        except Exception as e:
            print(f"\nAn unexpected error occurred: {e}")

    await job_service.shutdown()
    print("System shutting down.")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
