"""健康快照提供者模块"""

from .base import BaseHealthProvider
from .rest_provider import RestHealthProvider

__all__ = ['BaseHealthProvider', 'RestHealthProvider']
