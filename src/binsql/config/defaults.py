"""Default configuration template for binsql."""
from __future__ import annotations

VERSION = "0.1.0"

DEFAULT_CONFIG_YAML: str = """\
# binsql configuration

backend:
  type: "snapshot"

engine:
  # Refuse per-row UDFs (func_at, disasm, search_bytes, ...) over more rows than this.
  per_row_udf_limit: 100000
  # Refuse decompile() over more rows than this.
  decompile_udf_limit: 64
  # Warn when a per-row UDF sits inside an aggregate over more rows than this.
  udf_warn_rows: 1000
  decompile_cache_size: 256

server:
  bind: "127.0.0.1"
  # http_port: 8081
  # tcp_port: 13337
  # token: null  # Set via BINSQL_SERVER_TOKEN env var
  max_frame_bytes: 16777216
  read_timeout_s: 300
  log_level: "warning"

output:
  format: "table"

logging:
  level: "WARNING"
"""
