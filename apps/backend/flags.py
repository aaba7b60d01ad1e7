import os

def enabled(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("true", "1", "yes", "on")
