"""Linked zero-copy buffers, stream adapters, socket helpers and epoll/kqueue pollers."""

__version__ = "0.1.0"