from dispatcher import file_manager


def _workspace(root, submission_id):
    src = root / str(submission_id) / 'src'
    src.mkdir(parents=True)
    (src / 'main.py').write_text('print(1)')
    return src


def test_clean_data(tmp_path):
    _workspace(tmp_path, 1)
    file_manager.clean_data(tmp_path, 1)
    assert not (tmp_path / '1').exists()
    # nothing to clean is fine
    file_manager.clean_data(tmp_path, 1)


def test_backup_data(tmp_path):
    root = tmp_path / 'submissions'
    _workspace(root, 42)
    dest = file_manager.backup_data(root, tmp_path / 'backup', 42)
    assert dest.parent == tmp_path / 'backup'
    assert dest.name.startswith('42_')
    assert (dest / 'src' / 'main.py').read_text() == 'print(1)'
    assert not (root / '42').exists()


def test_backup_missing_workspace(tmp_path):
    assert file_manager.backup_data(tmp_path, tmp_path / 'backup', 7) is None
    assert not (tmp_path / 'backup').exists()
