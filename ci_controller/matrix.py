"""
Expansion of a normalized build config into per-job configs.
"""

import copy
import itertools
from typing import Any

# Keys whose values span the build matrix, in expansion order
MATRIX_KEYS = (
    "os",
    "rvm",
    "gemfile",
    "jdk",
    "python",
    "node_js",
    "php",
    "go",
    "scala",
    "perl",
    "otp_release",
    "compiler",
    "env",
)


def _axis(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value or [None]
    return [value]


def expand_matrix(config: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Cross product of the matrix keys present in ``config``.

    Every other key is copied into each job config unchanged. A config
    without matrix keys expands to exactly one job.

    Example:
        >>> expand_matrix({"rvm": ["2.7", "3.2"], "env": ["A=1"]})
        [{'rvm': '2.7', 'env': 'A=1'}, {'rvm': '3.2', 'env': 'A=1'}]
    """
    keys = [key for key in MATRIX_KEYS if config.get(key) is not None]
    shared = {key: value for key, value in config.items() if key not in keys}

    if not keys:
        return [copy.deepcopy(shared)]

    axes = [_axis(config[key]) for key in keys]
    jobs = []
    for values in itertools.product(*axes):
        job_config = copy.deepcopy(shared)
        for key, value in zip(keys, values):
            job_config[key] = copy.deepcopy(value)
        jobs.append(job_config)
    return jobs
