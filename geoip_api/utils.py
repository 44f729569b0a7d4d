import os

TRUE_VALUES = ("1", "true", "yes", "on")


def load_dotenv(env_file=".env"):
    """Load environment variables from a .env file into os.environ."""

    if not os.path.exists(env_file):
        return

    with open(env_file, "r", encoding="utf-8") as file:
        for line in file:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = [part.strip() for part in line.split("=", 1)]
                if (value.startswith('"') and value.endswith('"')) or (
                    value.startswith("'") and value.endswith("'")
                ):
                    value = value[1:-1]
                os.environ.setdefault(key, value)


def env_flag(name: str, default: bool = False) -> bool:
    """Read a boolean flag from the environment."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUE_VALUES


def env_str(name: str) -> str | None:
    """Read a string from the environment, treating blank values as unset."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def format_age(seconds: float) -> str:
    """
    Format a duration as a human readable age, e.g. "3 hours ago".

    Args:
        seconds: Elapsed time in seconds

    Returns:
        The largest whole unit that fits, followed by "ago"
    """
    seconds = max(0, int(seconds))
    units = [
        ("day", 24 * 60 * 60),
        ("hour", 60 * 60),
        ("minute", 60),
        ("second", 1),
    ]
    for name, size in units:
        count = seconds // size
        if count >= 1:
            return f"{count} {name}{'s' if count != 1 else ''} ago"
    return "just now"
