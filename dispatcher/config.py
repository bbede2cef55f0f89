import json
import os
from pathlib import Path

# backend config
BACKEND_API = os.getenv(
    'BACKEND_API',
    'http://web:8080',
)
# sandbox token
SANDBOX_TOKEN = os.getenv(
    'SANDBOX_TOKEN',
    'KoNoSandboxDa',
)
SUBMISSION_DIR = Path(os.getenv(
    'SUBMISSION_DIR',
    'submissions',
))
SUBMISSION_BACKUP_DIR = Path(
    os.getenv(
        'SUBMISSION_BACKUP_DIR',
        'submissions.bk',
    ))

_DEFAULT_DISPATCHER_CONFIG_PATH = Path(
    os.getenv('DISPATCHER_CONFIG', '.config/dispatcher.json'))

DISPATCHER_DEFAULTS = {
    # admission cap of the job queue, 0 means unbounded
    'QUEUE_SIZE': 1024,
    'MAX_WORKER_COUNT': 4,
    'MAX_ATTEMPTS': 5,
    'BACKOFF_BASE': 2.0,
    'BACKOFF_MAX': 60.0,
    'VISIBILITY_TIMEOUT': 300.0,
    'POLL_INTERVAL': 1.0,
    'PENALTY_PER_WRONG': 20,
}


def _load_config(path: Path) -> dict:
    try:
        with path.open() as f:
            return json.load(f)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError:
        return {}


def get_dispatcher_config(config_path: str | Path | None = None) -> dict:
    '''
    Merge dispatcher defaults, the JSON config file and environment
    variables (highest priority). Values keep the type of their default.
    '''
    path = Path(
        config_path) if config_path else _DEFAULT_DISPATCHER_CONFIG_PATH
    cfg = _load_config(path) if path else {}
    ret = {}
    for key, default in DISPATCHER_DEFAULTS.items():
        value = os.getenv(key, cfg.get(key, default))
        ret[key] = type(default)(value)
    return ret


_SUBMISSION_CONFIG_PATH = Path(
    os.getenv('SUBMISSION_CONFIG', '.config/submission.json'))

DEFAULT_LANGUAGES = {
    'c': {
        'image': 'noj-c',
        'source': 'main.c',
        'compile': ['gcc', '-O2', '-std=c11', '-o', 'main', 'main.c', '-lm'],
        'run': ['./main'],
    },
    'cpp': {
        'image': 'noj-cpp',
        'source': 'main.cpp',
        'compile': ['g++', '-O2', '-std=c++17', '-o', 'main', 'main.cpp'],
        'run': ['./main'],
    },
    'python': {
        'image': 'noj-py3',
        'source': 'main.py',
        'compile': None,
        'run': ['python3', 'main.py'],
    },
    'java': {
        'image': 'noj-java',
        'source': 'Main.java',
        'compile': ['javac', 'Main.java'],
        'run': ['java', '-Xss64m', 'Main'],
    },
}

SUBMISSION_DEFAULTS = {
    'docker_url': 'unix://var/run/docker.sock',
    'sandbox_backend': 'docker',
    # grace added on top of the time limit before the run is killed
    'wall_overhead_ms': 1000,
    'max_output_bytes': 64 * 1024 * 1024,
    'max_error_length': 4096,
    'isolate_network': True,
    'pids_limit': 64,
    'usage_wrapper': ['/usr/bin/time', '-f', '%e %M', '-o', '.usage'],
}


def get_submission_config(config_path: str | Path | None = None) -> dict:
    path = Path(config_path) if config_path else _SUBMISSION_CONFIG_PATH
    cfg = _load_config(path) if path else {}
    working_dir_env = os.getenv('SUBMISSION_WORKING_DIR')
    if working_dir_env:
        cfg['working_dir'] = working_dir_env
    cfg.setdefault('working_dir', str(SUBMISSION_DIR))
    backend_env = os.getenv('SANDBOX_BACKEND')
    if backend_env:
        cfg['sandbox_backend'] = backend_env
    for key, default in SUBMISSION_DEFAULTS.items():
        cfg.setdefault(key, default)
    languages = {k: dict(v) for k, v in DEFAULT_LANGUAGES.items()}
    for tag, profile in cfg.get('languages', {}).items():
        languages.setdefault(tag, {}).update(profile)
    cfg['languages'] = languages
    return cfg


def get_database_url() -> str:
    return os.getenv('DATABASE_URL', 'sqlite:///judge.db')


def get_redis_url() -> str:
    return os.getenv('REDIS_URL', 'redis://redis:6379/0')


def get_queue_backend() -> str:
    return os.getenv('QUEUE_BACKEND', 'redis')


def get_event_backend() -> str:
    return os.getenv('EVENT_BACKEND', 'webhook')


def get_scoring_lock_backend() -> str:
    return os.getenv('SCORING_LOCK_BACKEND', 'thread')
