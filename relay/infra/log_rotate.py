"""
Line-count based log rotation for the gateway log.

Backups are kept as <name>.1.log .. <name>.N.log; once they exist they are
folded into a dated zip archive so the log directory stays bounded.
"""

import logging
import shutil
import zipfile
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def rotate_logs(log_dir, log_name, max_lines=5000, max_backups=3,
                archive_name_prefix="gateway_log_archive", compression_level=4):
    """
    Rotate `log_dir/log_name` when it has more than `max_lines` lines.

    Existing numbered backups are moved into `<archive_name_prefix>_<YYYYmmdd>.zip`
    (appending to it if today's archive already exists), then the live log
    becomes `<name>.1.log` and an empty log file is created in its place.
    """
    log_dir = Path(log_dir)
    log_file = log_dir / log_name
    if not log_file.exists():
        return False

    try:
        with open(log_file, "r", encoding="utf-8", errors="ignore") as f:
            line_count = sum(1 for _ in f)
    except OSError as e:
        logger.warning(f"failed to read log file {log_file}: {e}")
        return False

    if line_count <= max_lines:
        return False

    base_name = log_name[:-4] if log_name.endswith(".log") else log_name
    backups = [
        log_dir / f"{base_name}.{i}.log"
        for i in range(1, max_backups + 1)
        if (log_dir / f"{base_name}.{i}.log").exists()
    ]

    if backups:
        today = datetime.now().strftime("%Y%m%d")
        archive_file = log_dir / f"{archive_name_prefix}_{today}.zip"
        try:
            _archive(archive_file, backups, compression_level)
        except (OSError, zipfile.BadZipFile) as e:
            logger.warning(f"failed to archive log backups into {archive_file}: {e}")

    try:
        for i in range(max_backups, 0, -1):
            src = log_dir / f"{base_name}.{i}.log"
            if src.exists():
                shutil.move(str(src), str(log_dir / f"{base_name}.{i + 1}.log"))
        shutil.move(str(log_file), str(log_dir / f"{base_name}.1.log"))
        log_file.touch()
    except OSError as e:
        logger.warning(f"failed to rotate log file {log_file}: {e}")
        return False
    return True


def _archive(archive_file, files, compression_level):
    # Mode "a" appends to today's archive or creates it.
    with zipfile.ZipFile(archive_file, "a", zipfile.ZIP_DEFLATED,
                         compresslevel=compression_level) as zf:
        existing = set(zf.namelist())
        for file in files:
            name = file.name
            if name in existing:
                stamp = datetime.now().strftime("%H%M%S")
                name = f"{file.stem}.{stamp}{file.suffix}"
            zf.write(file, name)
    for file in files:
        if file.exists():
            file.unlink()
