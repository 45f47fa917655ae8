# SPDX-License-Identifier: GPL-3.0-or-later
"""Caching of registry inspections of content addressed images."""
import functools
import hashlib
import re
from typing import Callable

from dogpile.cache import make_region
from dogpile.cache.api import NO_VALUE
from dogpile.cache.region import CacheRegion

from fbcgen.workers.config import get_worker_config

# Keyword arguments that control how a call runs but not what it returns
UNCACHED_KWARGS = frozenset({'cancel_event'})
DIGEST_PINNED_REGEX = re.compile(r'@sha256:[0-9a-f]{64}$')


def inspection_should_use_cache(*args, **kwargs) -> bool:
    """
    Return true when the inspection targets a digest pinned reference.

    A tag can be moved to other content at any time, so only content addressed references
    are taken from or stored in the cache.
    """
    return any(isinstance(arg, str) and DIGEST_PINNED_REGEX.search(arg) for arg in args)


def dogpile_cache(dogpile_region: CacheRegion, should_use_cache_fn: Callable) -> Callable:
    """
    Cache the output of the decorated function in a dogpile region.

    :param CacheRegion dogpile_region: the region to store the outputs in
    :param callable should_use_cache_fn: determines from the call arguments if the cache is used
    :return: the decorator
    :rtype: callable
    """

    def cache_decorator(func):
        @functools.wraps(func)
        def inner(*args, **kwargs):
            if not should_use_cache_fn(*args, **kwargs):
                return func(*args, **kwargs)

            cache_key = generate_cache_key(func.__name__, *args, **kwargs)
            cached_output = dogpile_region.get(cache_key)
            if cached_output is not NO_VALUE:
                return cached_output

            output = func(*args, **kwargs)
            dogpile_region.set(cache_key, output)
            return output

        return inner

    return cache_decorator


def generate_cache_key(fn: str, *args, **kwargs) -> str:
    """Generate the cache key of a call, ignoring the arguments listed in ``UNCACHED_KWARGS``."""
    arguments = '|'.join(
        [str(arg) for arg in args]
        + [f'{kwarg}={kwargs[kwarg]}' for kwarg in sorted(kwargs) if kwarg not in UNCACHED_KWARGS]
    )
    return hashlib.sha256(f'{fn}|{arguments}'.encode('utf-8')).hexdigest()


def create_dogpile_region() -> CacheRegion:
    """Create the dogpile region configured by the ``fbcgen_dogpile_*`` options."""
    conf = get_worker_config()

    return make_region().configure(
        conf.fbcgen_dogpile_backend,
        expiration_time=conf.fbcgen_dogpile_expiration_time,
        arguments=conf.fbcgen_dogpile_arguments,
    )
