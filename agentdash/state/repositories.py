"""Read-only view of the dashboard's known repositories."""

import json
import logging
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


def load_repository_paths(repositories_file: Path) -> List[str]:
    """Return the `path` of every repository the dashboard tracks.

    The file is owned by the dashboard. A missing or unreadable file
    means no repositories are known.
    """
    try:
        data = json.loads(Path(repositories_file).read_text())
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read repositories from {repositories_file}: {e}")
        return []

    if not isinstance(data, list):
        logger.warning(f"Ignoring {repositories_file}: expected a JSON array")
        return []

    paths = []
    for repo in data:
        if isinstance(repo, dict) and isinstance(repo.get("path"), str) and repo["path"]:
            paths.append(repo["path"])
    return paths
