from datetime import datetime, timezone

from surveysync.remote.fields import (
    DescriptionFields,
    FactFields,
    ParentFields,
    epoch_ms_to_datetime,
    join_values,
    normalize_global_id,
)

from conftest import JAN_01


def test_normalize_global_id_strips_braces_and_uppercases():
    assert normalize_global_id("{abcd-0001}") == "ABCD-0001"
    assert normalize_global_id(" ABCD-0001 ") == "ABCD-0001"
    assert normalize_global_id("") is None
    assert normalize_global_id(None) is None


def test_epoch_ms_to_datetime():
    assert epoch_ms_to_datetime(JAN_01) == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert epoch_ms_to_datetime(None) is None
    assert epoch_ms_to_datetime("not a date") is None


def test_parent_from_attributes_maps_case_insensitively_and_keeps_extra():
    parent = ParentFields.from_attributes({
        "objectid": "7",
        "GlobalID": "{abcd-0001}",
        "ca": "CA-9",
        "SUPERVISOR": "Ana",
        "NORTE": "8650000.5",
        "NEW_FIELD": "kept",
    })

    assert parent.globalid == "ABCD-0001"
    assert parent.remote_globalid == "{abcd-0001}"
    assert parent.objectid == 7
    assert parent.codigo_accion == "CA-9"
    assert parent.nombre_supervisor == "Ana"
    assert parent.norte == 8650000.5
    assert parent.extra == {"NEW_FIELD": "kept"}


def test_parent_without_global_id_is_skipped():
    assert ParentFields.from_attributes({"OBJECTID": 1, "CA": "X"}) is None


def test_fingerprint_ignores_global_id_spelling_but_not_values():
    a = ParentFields.from_attributes({"GLOBALID": "{abcd}", "SUPERVISOR": "Ana"})
    b = ParentFields.from_attributes({"GLOBALID": "ABCD", "SUPERVISOR": "Ana"})
    c = ParentFields.from_attributes({"GLOBALID": "ABCD", "SUPERVISOR": "Luis"})

    assert a.fingerprint() == b.fingerprint()
    assert a.fingerprint() != c.fingerprint()


def test_fingerprint_covers_children_in_any_order():
    parent = ParentFields.from_attributes({"GLOBALID": "G", "SUPERVISOR": "Ana"})
    d1 = DescriptionFields.from_attributes({"OBJECTID": 11, "GUID": "G", "DESCRIP_1": "uno"})
    d2 = DescriptionFields.from_attributes({"OBJECTID": 12, "GUID": "G", "DESCRIP_1": "dos"})
    fact = FactFields.from_attributes({"OBJECTID": 21, "GUID": "G", "HECHO_DETEC_1": "Derrame"})
    edited = FactFields.from_attributes({"OBJECTID": 21, "GUID": "G", "HECHO_DETEC_1": "Derrame mayor"})

    base = parent.fingerprint([d1, d2], [fact])

    assert base != parent.fingerprint()
    assert base == parent.fingerprint([(d2, {}), (d1, {})], [(fact, {})])
    assert base != parent.fingerprint([d1, d2], [edited])
    assert base != parent.fingerprint([d1], [fact])


def test_parent_columns_convert_dates():
    parent = ParentFields.from_attributes({"GLOBALID": "G", "FECHA_HORA": JAN_01, "EXTRA_X": 1})
    columns = parent.columns()

    assert columns["fecha"] == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert columns["globalid"] == "G"
    assert columns["extra"] == '{"EXTRA_X": 1}'
    assert "remote_globalid" not in columns


def test_child_records_normalize_link():
    desc = DescriptionFields.from_attributes({"OBJECTID": 3, "GUID": "{abcd}", "DESCRIP_1": "texto"})
    fact = FactFields.from_attributes({"OBJECTID": 4, "guid": "abcd", "HECHO_DETEC_1": "Derrame"})

    assert desc.guid == fact.guid == "ABCD"
    assert desc.descrip_1 == "texto"
    assert fact.hecho_detec_1 == "Derrame"
    assert fact.descrip_2 is None


def test_join_values_skips_blanks():
    assert join_values(["a", None, " ", "b"]) == "a | b"
    assert join_values([]) is None
