import os
from dataclasses import dataclass
from pathlib import Path

# Base paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("OJ_DATA_DIR", str(BASE_DIR / "data")))
WORK_DIR = Path(os.getenv("OJ_WORK_DIR", str(DATA_DIR / "work")))

# Create directories
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Sandbox settings
SANDBOX_BACKEND = os.getenv("OJ_SANDBOX_BACKEND", "nsjail")  # nsjail | rlimit
NSJAIL_BINARY = os.getenv("OJ_NSJAIL_BINARY", "/usr/local/bin/nsjail")
CHROOT_PATH = os.getenv("OJ_CHROOT_PATH", "/chroot")
WORKSPACE_PATH = "/workspace"
SANDBOX_UID = 65534  # nobody
SANDBOX_GID = 65534
MAX_FILE_SIZE_MB = 10
MAX_PROCESSES = 50
MAX_FILE_DESCRIPTORS = 100
ADDRESS_SPACE_BACKSTOP_MB = 4096  # RLIMIT_AS when memory is enforced by accounting instead
NSJAIL_CGROUP_MEMORY = os.getenv("OJ_NSJAIL_CGROUP_MEMORY", "1") == "1"
CGROUPV2_MOUNT = os.getenv("OJ_CGROUPV2_MOUNT", "/sys/fs/cgroup/nsjail")  # delegated subtree

# Judge settings
MAX_CONCURRENT_JUDGES = int(os.getenv("OJ_MAX_CONCURRENT_JUDGES", "4"))
COMPILE_TIMEOUT = 30  # seconds
MAX_OUTPUT_SIZE = 10 * 1024 * 1024  # bytes read back from the program
MAX_MESSAGE_SIZE = 2000  # chars of diagnostics kept on a submission
DEBUG = os.getenv("OJ_DEBUG", "0").lower() in ("1", "true", "yes")

# Languages inserted into an empty database
DEFAULT_LANGUAGES = [
    {
        "name": "Python 3",
        "interpreter_binary": "/usr/bin/python3",
        "interpreter_flags": "",
        "memory_limit_kb": 65536,
        "time_limit_sec": 5,
        "extension": "py",
    },
    {
        "name": "Ruby",
        "interpreter_binary": "/usr/bin/ruby",
        "interpreter_flags": "",
        "memory_limit_kb": 65536,
        "time_limit_sec": 5,
        "extension": "rb",
    },
    {
        "name": "JavaScript",
        "interpreter_binary": "/usr/bin/node",
        "interpreter_flags": "",
        "memory_limit_kb": 262144,
        "time_limit_sec": 5,
        "extension": "js",
    },
    {
        "name": "C++17",
        "compiler_binary": "/usr/bin/g++",
        "compiler_flags": "-O2 -std=c++17 -static -DONLINE_JUDGE -o {compiled_file} {source_file}",
        "memory_limit_kb": 32768,
        "time_limit_sec": 1,
        "extension": "cpp",
    },
]

# Database
DATABASE_URL = os.getenv("OJ_DATABASE_URL", f"sqlite+aiosqlite:///{DATA_DIR}/oj.db")


@dataclass
class JudgeSettings:
    """Settings handed to the runner, evaluators and the judge at construction."""

    work_dir: Path = WORK_DIR
    sandbox_backend: str = SANDBOX_BACKEND
    nsjail_binary: str = NSJAIL_BINARY
    chroot_path: str = CHROOT_PATH
    workspace_path: str = WORKSPACE_PATH
    sandbox_uid: int = SANDBOX_UID
    sandbox_gid: int = SANDBOX_GID
    max_file_size_mb: int = MAX_FILE_SIZE_MB
    max_processes: int = MAX_PROCESSES
    max_file_descriptors: int = MAX_FILE_DESCRIPTORS
    address_space_backstop_mb: int = ADDRESS_SPACE_BACKSTOP_MB
    nsjail_cgroup_memory: bool = NSJAIL_CGROUP_MEMORY
    cgroupv2_mount: str = CGROUPV2_MOUNT
    measure_cpu_time: bool = True
    compile_timeout_sec: float = COMPILE_TIMEOUT
    max_output_size: int = MAX_OUTPUT_SIZE
    max_message_size: int = MAX_MESSAGE_SIZE
    max_concurrent_judges: int = MAX_CONCURRENT_JUDGES
    debug: bool = DEBUG

    @classmethod
    def from_env(cls) -> "JudgeSettings":
        return cls(
            measure_cpu_time=os.getenv("OJ_MEASURE_CPU_TIME", "1") == "1",
        )
