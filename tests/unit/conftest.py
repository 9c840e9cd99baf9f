"""Shared fixtures: a fake restic executable and a recording progress updater."""

import sys
from pathlib import Path

import pytest

from resticprov.core.models import Progress

FAKE_RESTIC = '''\
#!{python}
import json
import os
import sys

args = sys.argv[1:]
sub = args[0]
mode = os.environ.get("FAKE_RESTIC_MODE", "ok")

log_path = os.environ.get("FAKE_RESTIC_LOG")
if log_path:
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(os.getcwd() + " " + " ".join(args) + "\\n")

if sub == "backup":
    if mode == "silent":
        import time
        time.sleep(30)
    if mode == "empty":
        sys.stderr.write("Fatal: unable to save snapshot: snapshot is empty\\n")
        sys.exit(1)
    if mode == "fail":
        sys.stderr.write("Fatal: repository is already locked\\n")
        sys.exit(1)
    print(json.dumps({{"message_type": "status", "total_bytes": 100, "bytes_done": 50}}))
    if mode == "nosummary":
        sys.exit(0)
    print(json.dumps({{"message_type": "summary", "total_bytes_processed": 100,
                      "snapshot_id": "deadbeefcafe"}}))
elif sub == "snapshots":
    if mode == "nosnapshot":
        print("[]")
    else:
        print(json.dumps([{{"id": "deadbeefcafe", "short_id": "deadbeef"}}]))
elif sub == "stats":
    print(json.dumps({{"total_size": 42}}))
elif sub == "restore":
    if mode == "fail":
        sys.stderr.write("Fatal: no matching ID found\\n")
        sys.exit(1)
    with open("restored.txt", "w", encoding="utf-8") as f:
        f.write("x" * 42)
else:
    sys.stderr.write("unknown command " + sub + "\\n")
    sys.exit(2)
'''


@pytest.fixture
def fake_restic(tmp_path: Path) -> Path:
    """Path to an executable script that mimics restic's JSON output."""
    if sys.platform == "win32":
        pytest.skip("fake restic script needs a POSIX shebang")
    script = tmp_path / "bin" / "restic"
    script.parent.mkdir()
    script.write_text(FAKE_RESTIC.format(python=sys.executable), encoding="utf-8")
    script.chmod(0o755)
    return script


class RecordingUpdater:
    """ProgressUpdater that keeps every report."""

    def __init__(self) -> None:
        self.reports: list[Progress] = []

    def update_progress(self, progress: Progress) -> None:
        self.reports.append(progress)


@pytest.fixture
def updater() -> RecordingUpdater:
    return RecordingUpdater()
