"""SQL statements for the PostgreSQL partitioned HEP tables.

Placeholders are filled in by the rotator: ``{{date}}``, ``{{time}}``,
``{{startTime}}``, ``{{endTime}}`` and ``{{partName}}``.
"""

from __future__ import annotations

from dataclasses import dataclass

DATE = "{{date}}"
TIME = "{{time}}"
START_TIME = "{{startTime}}"
END_TIME = "{{endTime}}"
PART_NAME = "{{partName}}"

_SUFFIX = f"{DATE}_{TIME}"

_COMMON_INDEXES = (
    ("create_date", "create_date"),
    ("sid", "sid"),
    ("srcIp", "(protocol_header->>'srcIp')"),
    ("dstIp", "(protocol_header->>'dstIp')"),
    ("correlation_id", "(protocol_header->>'correlation_id')"),
)

_ISUP_INDEXES = (
    ("create_date", "create_date"),
    ("sid", "sid"),
    ("correlation_id", "(protocol_header->>'correlation_id')"),
    ("called_number", "(data_header->>'called_number')"),
    ("calling_number", "(data_header->>'calling_number')"),
    ("opc", "(data_header->>'opc')"),
    ("dpc", "(data_header->>'dpc')"),
    ("cic", "(data_header->>'cic')"),
    ("msg_name", "(data_header->>'msg_name')"),
    ("callid", "(data_header->>'callid')"),
)

_SIP_INDEXES = _COMMON_INDEXES + tuple(
    (field, f"(data_header->>'{field}')")
    for field in (
        "ruri_domain",
        "ruri_user",
        "from_user",
        "to_user",
        "pid_user",
        "auth_user",
        "callid",
        "method",
    )
)

DROP_PARTITION = f"DROP TABLE IF EXISTS {PART_NAME};"

SYS_DF = (
    "CREATE OR REPLACE FUNCTION sys_df() \nRETURNS SETOF text[]\nLANGUAGE plpgsql \nas\n$$\n"
    "BEGIN\n    CREATE TEMP TABLE IF NOT EXISTS tmp_sys_df (content text) ON COMMIT DROP;\n"
    "        EXECUTE format('COPY tmp_sys_df FROM PROGRAM ''df %s | tail -n +2'' ', "
    "current_setting('data_directory'));\n"
    "    RETURN QUERY SELECT regexp_split_to_array(content, '\\s+') FROM tmp_sys_df;\n"
    "END;\n$$;"
)


@dataclass(frozen=True)
class PartitionTable:
    """A parent table split into time based partitions.

    ``kind`` names the retention class (log, isup, report, rtcp, call,
    register, default); ``group`` names the rotation step setting it follows
    (log, isup, qos, sip).
    """

    kind: str
    name: str
    group: str
    indexes: tuple[tuple[str, str], ...]

    @property
    def partition(self) -> str:
        """Name pattern of one partition."""
        return f"{self.name}_{_SUFFIX}"

    @property
    def create_query(self) -> str:
        """Statement creating the partitioned parent table."""
        return (
            f"CREATE TABLE IF NOT EXISTS {self.name} (\n"
            "\tid BIGSERIAL NOT NULL,\n"
            "\tsid varchar NOT NULL,\n"
            "\tcreate_date timestamp with time zone DEFAULT CURRENT_TIMESTAMP NOT NULL,\n"
            "\tprotocol_header jsonb NOT NULL,\n"
            "\tdata_header jsonb NOT NULL,\n"
            "\traw varchar NOT NULL\n"
            ") PARTITION BY RANGE (create_date);"
        )

    @property
    def partition_query(self) -> str:
        """Statement creating one partition for a time range."""
        return (
            f"CREATE TABLE IF NOT EXISTS {self.partition} PARTITION OF {self.name} "
            f"FOR VALUES FROM ('{START_TIME}') TO ('{END_TIME}');"
        )

    @property
    def index_queries(self) -> tuple[str, ...]:
        """Statements creating the indexes of one partition."""
        part = self.partition
        return tuple(
            f"CREATE INDEX IF NOT EXISTS {part}_{suffix} ON {part} ({expr});"
            for suffix, expr in self.indexes
        )

    @property
    def select_query(self) -> str:
        """Query listing the partitions older than a given date and time."""
        return (
            f"SELECT tablename FROM pg_tables WHERE tablename LIKE '{self.name}_%' "
            f"and tablename < '{self.partition}';"
        )

    @property
    def drop_query(self) -> str:
        """Statement dropping one partition by name."""
        return DROP_PARTITION


LOG = PartitionTable("log", "hep_proto_100_default", "log", _COMMON_INDEXES)
ISUP = PartitionTable("isup", "hep_proto_54_default", "isup", _ISUP_INDEXES)
REPORT = PartitionTable("report", "hep_proto_35_default", "qos", _COMMON_INDEXES)
RTCP = PartitionTable("rtcp", "hep_proto_5_default", "qos", _COMMON_INDEXES)
CALL = PartitionTable("call", "hep_proto_1_call", "sip", _SIP_INDEXES)
REGISTER = PartitionTable("register", "hep_proto_1_registration", "sip", _SIP_INDEXES)
DEFAULT = PartitionTable("default", "hep_proto_1_default", "sip", _SIP_INDEXES)

# Parent tables in the order they are created.
TBL_DATA: tuple[str, ...] = tuple(
    t.create_query for t in (LOG, REPORT, RTCP, CALL, REGISTER, DEFAULT, ISUP)
)

PAR_LOG: tuple[str, ...] = (LOG.partition_query,)
PAR_ISUP: tuple[str, ...] = (ISUP.partition_query,)
PAR_QOS: tuple[str, ...] = (REPORT.partition_query, RTCP.partition_query)
PAR_SIP: tuple[str, ...] = tuple(t.partition_query for t in (CALL, REGISTER, DEFAULT))

IDX_LOG: tuple[str, ...] = LOG.index_queries
IDX_ISUP: tuple[str, ...] = ISUP.index_queries
IDX_QOS: tuple[str, ...] = REPORT.index_queries + RTCP.index_queries
IDX_SIP: tuple[str, ...] = CALL.index_queries + REGISTER.index_queries + DEFAULT.index_queries


def partition_tables() -> tuple[PartitionTable, ...]:
    """Return the partitioned tables in the order old partitions are dropped."""
    return (LOG, ISUP, REPORT, RTCP, CALL, REGISTER, DEFAULT)