"""Errors reported by region clients and the mapping of server exceptions."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping


class _RegionError(Exception):
    """Base for errors that wrap an underlying cause."""

    def __init__(self, cause: object = None) -> None:
        if cause is None:
            super().__init__()
        else:
            super().__init__(cause)
        self.cause = cause

    def __str__(self) -> str:
        name = type(self).__name__
        if self.cause is None:
            return name
        return f"{name}: {self.cause}"

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        return str(self) == str(other)

    def __hash__(self) -> int:
        return hash((type(self), str(self)))


class ServerError(_RegionError):
    """An error the client cannot recover from; the connection must be closed."""


class RetryableError(_RegionError):
    """A transient error: the RPC should be retried after a backoff."""


class NotServingRegionError(_RegionError):
    """The region must be looked up again and the RPC retried, maybe elsewhere."""


class JavaException(Exception):
    """An exception reported by the server that needs no special handling."""

    def __init__(self, class_name: str, stack: str) -> None:
        super().__init__(f"HBase Java exception {class_name}:\n{stack}")
        self.class_name = class_name
        self.stack = stack

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JavaException):
            return NotImplemented
        return (self.class_name, self.stack) == (other.class_name, other.stack)

    def __hash__(self) -> int:
        return hash((self.class_name, self.stack))


# Each table maps an exception class to a text its stack trace must contain.
_REGION_EXCEPTIONS: Mapping[str, str] = MappingProxyType({
    "org.apache.hadoop.hbase.NotServingRegionException": "",
    "org.apache.hadoop.hbase.exceptions.RegionMovedException": "",
    "java.io.IOException": "Cannot append; log is closed",
})

_RETRYABLE_EXCEPTIONS: Mapping[str, str] = MappingProxyType({
    "org.apache.hadoop.hbase.CallQueueTooBigException": "",
    "org.apache.hadoop.hbase.exceptions.RegionOpeningException": "",
    "org.apache.hadoop.hbase.ipc.ServerNotRunningYetException": "",
    "org.apache.hadoop.hbase.quotas.RpcThrottlingException": "",
    "org.apache.hadoop.hbase.RetryImmediatelyException": "",
    "org.apache.hadoop.hbase.RegionTooBusyException": "",
})

_SERVER_EXCEPTIONS: Mapping[str, str] = MappingProxyType({
    "org.apache.hadoop.hbase.regionserver.RegionServerAbortedException": "",
    "org.apache.hadoop.hbase.regionserver.RegionServerStoppedException": "",
})

_CLASSIFIERS = (
    (_RETRYABLE_EXCEPTIONS, RetryableError),
    (_REGION_EXCEPTIONS, NotServingRegionError),
    (_SERVER_EXCEPTIONS, ServerError),
)


def exception_to_error(class_name: str, stack: str) -> Exception:
    """Turn a server exception into the error that tells the caller what to do."""
    err = JavaException(class_name, stack)
    for table, kind in _CLASSIFIERS:
        marker = table.get(class_name)
        if marker is not None and marker in stack:
            return kind(err)
    return err