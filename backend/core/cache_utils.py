"""
Caching utilities for report queries
Report entries are keyed under a version number that is bumped whenever
projects, timesheets or financial documents change.
"""
from django.conf import settings
from django.core.cache import cache
import hashlib
import logging

logger = logging.getLogger(__name__)

REPORTS_VERSION_KEY = 'reports:version'


def make_cache_key(prefix, *args, **kwargs):
    """Generate a unique cache key from arguments"""
    key_data = f"{prefix}:{args}:{sorted(kwargs.items())}"
    key_hash = hashlib.md5(key_data.encode()).hexdigest()
    return f"{prefix}:{key_hash}"


def get_reports_version():
    version = cache.get(REPORTS_VERSION_KEY)
    if version is None:
        cache.add(REPORTS_VERSION_KEY, 1, None)
        version = cache.get(REPORTS_VERSION_KEY, 1)
    return version


def bump_reports_version():
    """Invalidate every cached report by moving to a new version"""
    try:
        cache.incr(REPORTS_VERSION_KEY)
    except ValueError:
        # Key missing or evicted
        cache.set(REPORTS_VERSION_KEY, 2, None)
    logger.debug("Bumped reports cache version")


def get_cached_report(name, *args, **kwargs):
    """
    Get a cached report payload
    Returns tuple: (cached_data, cache_key)
    """
    cache_key = make_cache_key(f"report_{name}", get_reports_version(), *args, **kwargs)
    return cache.get(cache_key), cache_key


def cache_report(cache_key, data, ttl=None):
    """Cache report payload"""
    if ttl is None:
        ttl = getattr(settings, 'REPORTS_CACHE_TTL', 300)
    cache.set(cache_key, data, ttl)
    logger.debug(f"Cached report: {cache_key}")
