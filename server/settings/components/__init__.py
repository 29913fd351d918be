"""Shared helpers for settings components."""

from pathlib import Path

from decouple import AutoConfig

# Build paths inside the project like this: BASE_DIR.joinpath('some')
BASE_DIR = Path(__file__).parent.parent.parent.parent

# Loading `.env` files
# See docs: https://pypi.org/project/python-decouple/
config = AutoConfig(search_path=BASE_DIR.joinpath('config'))


def optional_seconds(raw_value: str) -> float | None:
    """Cast a duration setting, empty or ``none`` meaning no limit."""
    if raw_value.strip().lower() in {'', 'none'}:
        return None
    return float(raw_value)
