"""Integrations with the storage layer's replication service."""

from shardshift.integrations.replication import RemoteOperation, ReplicationClient
from shardshift.integrations.replication_request import ReplicationRequest

__all__ = ['RemoteOperation', 'ReplicationClient', 'ReplicationRequest']
