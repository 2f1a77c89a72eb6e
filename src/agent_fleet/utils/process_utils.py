"""Process management utilities for killing process trees."""

import os
import signal


def kill_process_tree(pid: int, sig: int) -> None:
    """Send signal to entire process group, falling back to single process.

    Agent CLIs are spawned with start_new_session=True so they lead their own
    process group, and killpg reaches the tools they launched as well.
    """
    if os.name == "nt":
        # No process groups; terminate/kill map onto TerminateProcess
        try:
            os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError, OSError):
            pass
        return

    try:
        pgid = os.getpgid(pid)
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        # Process may not be a group leader
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
