"""Utilities for handling KeyboardInterrupt while an external process runs.

make and the compiler driver spawn their own children, so terminating only
the direct child leaves jobs running. These helpers kill the whole process
tree before propagating the interrupt to the main thread.
"""

import _thread
import logging
import threading
from typing import Optional

import psutil


def kill_process_tree(pid: int, timeout: float = 3.0) -> int:
    """Kill a process and all of its descendants.

    Args:
        pid: Root process id
        timeout: Seconds to wait for processes to exit after SIGKILL

    Returns:
        Number of processes that were signalled
    """
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0

    try:
        procs = root.children(recursive=True)
    except psutil.NoSuchProcess:
        procs = []
    procs.append(root)

    killed = 0
    for proc in procs:
        try:
            proc.kill()
            killed += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logging.debug(f"Could not kill process {proc.pid}: {e}")

    psutil.wait_procs(procs, timeout=timeout)
    return killed


def handle_keyboard_interrupt_properly(
    ke: KeyboardInterrupt,
    pid: Optional[int] = None
) -> None:
    """Kill the running child tree (if any) and re-raise the interrupt.

    Usage:
        try:
            proc.wait()
        except KeyboardInterrupt as ke:
            handle_keyboard_interrupt_properly(ke, proc.pid)

    Args:
        ke: The KeyboardInterrupt exception to handle
        pid: Pid of the external process that was running, if any

    Raises:
        KeyboardInterrupt: Always re-raises the exception after handling
    """
    if pid is not None:
        count = kill_process_tree(pid)
        logging.warning(f"Interrupted: killed {count} build process(es)")
    if threading.current_thread() is not threading.main_thread():
        _thread.interrupt_main()
    raise ke
