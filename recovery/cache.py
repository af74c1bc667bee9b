import json
import os
from functools import wraps
from pathlib import Path

import toml


def cached(path):
    """
    Persist a pipeline step's result and reload it on the next run.

    The path may reference keyword arguments of the decorated step and
    their attributes, e.g.
    ``cached('snapshot/{block}/resolved-{config.fingerprint}.json')`` keeps
    runs at different heights, or with a corrected config, apart.
    """
    template = str(path)
    suffix = Path(template).suffix
    codec = {'.toml': toml, '.json': json}[suffix]
    codec_args = {'.json': {'indent': 2}}.get(suffix, {})

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            target = Path(template.format(**kwargs))
            if target.exists():
                print('load from cache', target)
                return codec.loads(target.read_text())
            result = func(*args, **kwargs)
            os.makedirs(target.parent, exist_ok=True)
            target.write_text(codec.dumps(result, **codec_args))
            print('write to cache', target)
            return result
        return wrapper
    return decorator
