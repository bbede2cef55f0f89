import shutil
from datetime import datetime
from pathlib import Path
from .utils import logger


def clean_data(root_dir: Path, submission_id):
    submission_dir = Path(root_dir) / str(submission_id)
    shutil.rmtree(submission_dir, ignore_errors=True)


def backup_data(root_dir: Path, backup_dir: Path, submission_id):
    '''
    Keep the build directory of a submission that could not be judged,
    for an operator to inspect.
    '''
    submission_dir = Path(root_dir) / str(submission_id)
    if not submission_dir.exists():
        return None
    backup_dir = Path(backup_dir)
    backup_dir.mkdir(parents=True, exist_ok=True)
    dest = backup_dir / f'{submission_id}_{datetime.now().strftime("%Y-%m-%d_%H:%M:%S")}'
    shutil.move(str(submission_dir), str(dest))
    logger().info(f'backup submission data [id={submission_id}] -> {dest}')
    return dest
