"""Request handlers for telemetry ingestion, release lookup and the root redirect."""