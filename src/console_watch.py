"""Console error collection with known-benign noise filtered out."""

import re


BENIGN_CONSOLE_PATTERNS = [
    re.compile(r"Failed to load resource", re.I),
    re.compile(r"net::ERR_", re.I),
    re.compile(r"\[Vue warn\]", re.I),
    re.compile(r"\[intlify\]", re.I),
    re.compile(r"Not found '.*' key in '.*' locale messages", re.I),
    re.compile(r"missing.*translation", re.I),
    re.compile(r"\[(vite|hmr|wds)\]", re.I),
    re.compile(r"webpack-dev-server", re.I),
    re.compile(r"hot module replacement", re.I),
]


def is_benign(text: str) -> bool:
    return any(p.search(text or "") for p in BENIGN_CONSOLE_PATTERNS)


class ConsoleErrorCollector:
    def __init__(self):
        self.errors: list[str] = []
        self.suppressed = 0

    def __call__(self, msg_type: str, text: str) -> None:
        if msg_type != "error":
            return
        if is_benign(text):
            self.suppressed += 1
            return
        self.errors.append(text)
