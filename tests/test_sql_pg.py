from hepserve import sql_pg
from hepserve.sql_pg import partition_tables


def _by_kind():
    return {t.kind: t for t in partition_tables()}


def test_drop_order_of_kinds():
    kinds = [t.kind for t in partition_tables()]
    assert kinds == ["log", "isup", "report", "rtcp", "call", "register", "default"]


def test_select_query_for_log_matches_format():
    log = _by_kind()["log"]
    assert log.select_query == (
        "SELECT tablename FROM pg_tables WHERE tablename LIKE 'hep_proto_100_default_%' "
        "and tablename < 'hep_proto_100_default_{{date}}_{{time}}';"
    )


def test_select_query_for_call():
    call = _by_kind()["call"]
    assert call.select_query == (
        "SELECT tablename FROM pg_tables WHERE tablename LIKE 'hep_proto_1_call_%' "
        "and tablename < 'hep_proto_1_call_{{date}}_{{time}}';"
    )


def test_drop_query_uses_part_name():
    for table in partition_tables():
        assert table.drop_query == "DROP TABLE IF EXISTS {{partName}};"


def test_partition_query_for_report():
    report = _by_kind()["report"]
    assert report.partition_query == (
        "CREATE TABLE IF NOT EXISTS hep_proto_35_default_{{date}}_{{time}} PARTITION OF "
        "hep_proto_35_default FOR VALUES FROM ('{{startTime}}') TO ('{{endTime}}');"
    )
    assert sql_pg.PAR_QOS[0] == report.partition_query


def test_partition_groups_cover_their_tables():
    assert sql_pg.PAR_LOG == (_by_kind()["log"].partition_query,)
    assert sql_pg.PAR_ISUP == (_by_kind()["isup"].partition_query,)
    assert [q.split()[5] for q in sql_pg.PAR_SIP] == [
        "hep_proto_1_call_{{date}}_{{time}}",
        "hep_proto_1_registration_{{date}}_{{time}}",
        "hep_proto_1_default_{{date}}_{{time}}",
    ]


def test_index_queries_pinned_examples():
    kinds = _by_kind()
    assert kinds["log"].index_queries[0] == (
        "CREATE INDEX IF NOT EXISTS hep_proto_100_default_{{date}}_{{time}}_create_date "
        "ON hep_proto_100_default_{{date}}_{{time}} (create_date);"
    )
    assert kinds["log"].index_queries[2] == (
        "CREATE INDEX IF NOT EXISTS hep_proto_100_default_{{date}}_{{time}}_srcIp "
        "ON hep_proto_100_default_{{date}}_{{time}} ((protocol_header->>'srcIp'));"
    )
    assert kinds["isup"].index_queries[-1] == (
        "CREATE INDEX IF NOT EXISTS hep_proto_54_default_{{date}}_{{time}}_callid "
        "ON hep_proto_54_default_{{date}}_{{time}} ((data_header->>'callid'));"
    )
    assert kinds["default"].index_queries[-1] == (
        "CREATE INDEX IF NOT EXISTS hep_proto_1_default_{{date}}_{{time}}_method "
        "ON hep_proto_1_default_{{date}}_{{time}} ((data_header->>'method'));"
    )


def test_index_queries_are_grouped_by_table():
    kinds = _by_kind()
    assert sql_pg.IDX_QOS == kinds["report"].index_queries + kinds["rtcp"].index_queries
    assert sql_pg.IDX_SIP == (
        kinds["call"].index_queries
        + kinds["register"].index_queries
        + kinds["default"].index_queries
    )


def test_every_index_query_targets_its_partition():
    for table in partition_tables():
        for query in table.index_queries:
            assert f" ON {table.partition} (" in query
            assert query.startswith(f"CREATE INDEX IF NOT EXISTS {table.partition}_")
            assert query.endswith(");")


def test_index_names_unique_within_table():
    for table in partition_tables():
        names = [q.split()[5] for q in table.index_queries]
        assert len(names) == len(set(names))


def test_create_queries_cover_all_tables():
    names = {t.name for t in partition_tables()}
    created = {q.split()[5] for q in sql_pg.TBL_DATA}
    assert created == names
    for query in sql_pg.TBL_DATA:
        assert query.endswith(") PARTITION BY RANGE (create_date);")
        assert "protocol_header jsonb NOT NULL" in query


def test_groups_match_rotation_settings():
    groups = {t.kind: t.group for t in partition_tables()}
    assert groups["report"] == groups["rtcp"] == "qos"
    assert groups["call"] == groups["register"] == groups["default"] == "sip"


def test_sys_df_function_definition():
    assert sql_pg.SYS_DF.startswith("CREATE OR REPLACE FUNCTION sys_df() \nRETURNS SETOF text[]")
    assert "regexp_split_to_array(content, '\\s+')" in sql_pg.SYS_DF
    assert sql_pg.SYS_DF.endswith("END;\n$$;")