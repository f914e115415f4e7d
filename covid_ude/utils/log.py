# covid_ude/utils/log.py
from __future__ import annotations
import threading
import time


# ------------------------ tiny logger ------------------------
def _now(): return time.strftime("%H:%M:%S")
def log(msg: str, *, enabled: bool = True):
    # thread name tells parallel location tasks apart
    if enabled: print(f"[{_now()}] [{threading.current_thread().name}] {msg}", flush=True)
