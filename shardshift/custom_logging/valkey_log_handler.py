"""
Valkey Log Handler for the ShardShift orchestrator.
Copies warning and error events into a Valkey stream so operators can find
errored resources after a run without trawling console output.
"""
import json
import time
from datetime import datetime, timedelta

LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40, "critical": 50}

class ValkeyLogHandler:
    """
    structlog processor that stores log events in a daily Valkey stream.
    Events that name a resource are also indexed per resource.
    """
    def __init__(self, valkey_client, prefix="shardshift:", min_level="warning", retention_days=30):
        """
        Initialize the Valkey log handler.

        Args:
            valkey_client: Valkey client instance
            prefix: Key prefix shared with the catalog
            min_level: Lowest level that is stored
            retention_days: Number of days to retain streams
        """
        self.valkey = valkey_client
        self.prefix = prefix
        self.min_level = LEVELS[min_level]
        self.retention_days = retention_days
        self.metadata_key = f"{prefix}logs:metadata"
        self.errored_key = f"{prefix}logs:errored"

    def __call__(self, logger, method_name, event_dict):
        """
        Process and store a log event in Valkey.
        This method signature matches the structlog processor interface.

        Returns:
            The event dictionary, unchanged, for the next processor
        """
        level = event_dict.get("level", method_name)
        if LEVELS.get(level, 20) < self.min_level:
            return event_dict

        try:
            stream_key = f"{self.prefix}logs:{datetime.now().strftime('%Y-%m-%d')}"
            entry = dict(event_dict, level=level)
            entry_id = self.valkey.xadd(stream_key, {"data": json.dumps(entry, default=str)})

            resource = event_dict.get("resource")
            if resource and level in ("error", "critical"):
                self.valkey.zadd(self.errored_key, {resource: time.time()})
                self.valkey.hset(f"{self.prefix}logs:resource:{resource}", "last_entry", entry_id)

            self.valkey.hset(self.metadata_key, stream_key, int(time.time()))
            self._apply_retention_policy()
        except Exception as e:
            # Logging must never take down the run
            print(f"Error in ValkeyLogHandler: {str(e)}")

        return event_dict

    def errored_resources(self, since=0):
        """Resources that logged an error since a timestamp (seconds since epoch)"""
        return list(self.valkey.zrangebyscore(self.errored_key, since, "+inf"))

    def _apply_retention_policy(self):
        """
        Remove streams older than retention_days.
        """
        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for stream_key in self.valkey.hkeys(self.metadata_key):
            try:
                stream_date = datetime.strptime(stream_key.split(":")[-1], "%Y-%m-%d")
            except ValueError:
                continue
            if stream_date < cutoff_date:
                self.valkey.delete(stream_key)
                self.valkey.hdel(self.metadata_key, stream_key)
        self.valkey.zremrangebyscore(self.errored_key, 0, time.time() - self.retention_days * 86400)
