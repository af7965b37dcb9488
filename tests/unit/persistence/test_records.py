"""Field maps between external snapshot records and storage rows."""

from __future__ import annotations

import pytest

from labstore.persistence import records


def test_inventory_defaults_fill_missing_fields_but_keep_zero() -> None:
    row = records.INVENTORY.to_row({"id": 7, "reagent": "", "quantity": 0})

    assert row == (7, records.NOT_SPECIFIED, records.NOT_SPECIFIED, records.NOT_SPECIFIED, 0, "")


def test_external_names_and_aliases_map_to_storage_columns() -> None:
    holiday = records.HOLIDAYS.to_row({"id": 1, "name": "Natal", "date": "2026-12-25"})
    calibration = records.CALIBRATIONS.to_row(
        {"id": 2, "equipment": "BALANCA", "startDate": "2026-03-01", "endDate": "2026-03-02", "observacoes": "T1"}
    )

    assert holiday == (1, "Natal", "2026-12-25", "2026-12-25")
    assert calibration == (2, "BALANCA", "2026-03-01", "2026-03-02", "calibration", "scheduled", "T1")


def test_round_trip_through_storage_restores_external_keys() -> None:
    assay = {
        "id": 5,
        "protocol": "P-5",
        "orcamento": "O",
        "assayManufacturer": "M",
        "model": "X",
        "nominalLoad": 8,
        "tensao": "127",
        "startDate": "2026-01-01",
        "endDate": "2026-01-02",
        "setup": 2,
        "status": "completed",
        "type": "efficiency",
        "observacoes": None,
        "cycles": 3,
        "report": "R",
        "consumption": {"water": [1, 2]},
        "totalConsumption": 4.5,
    }
    spec = records.HISTORICAL_ASSAYS
    stored = dict(zip(spec.column_names, spec.to_row(assay), strict=True))

    assert stored["assay_manufacturer"] == "M"
    assert stored["consumption"] == '{"water":[1,2]}'
    assert spec.from_row(stored) == assay


def test_settings_values_are_stored_verbatim_as_json() -> None:
    spec = records.SETTINGS

    assert spec.to_row({"key": "alertThreshold", "value": 0}) == ("alertThreshold", "0")
    assert spec.to_row({"key": "schedulePassword", "value": ""}) == ("schedulePassword", '""')
    assert spec.to_row({"key": "missing", "value": None}) == ("missing", "null")
    assert spec.from_row({"key": "flags", "value": '{"a":true}'}) == {"key": "flags", "value": {"a": True}}


def test_system_user_defaults() -> None:
    row = records.SYSTEM_USERS.to_row({"username": "bia"})

    assert row == ("bia", "user", "bia", "[]")


def test_calibration_equipment_tag_defaults_from_id() -> None:
    row = dict(
        zip(
            records.CALIBRATION_EQUIPMENTS.column_names,
            records.CALIBRATION_EQUIPMENTS.to_row({"id": "eq-1", "validity": "2027-01-01"}),
            strict=True,
        )
    )

    assert row["tag"] == "TAG-eq-1"
    assert row["equipment"] == "Equipamento"
    assert row["calibration_status"] == "disponivel"


def test_snapshot_records_accepts_mapping_shapes() -> None:
    settings = records.snapshot_records(records.SETTINGS, {"alertThreshold": 30})
    users = records.snapshot_records(records.SYSTEM_USERS, {"ana": {"type": "administrador"}})

    assert settings == [{"key": "alertThreshold", "value": 30}]
    assert users == [{"type": "administrador", "username": "ana"}]
    assert records.snapshot_records(records.INVENTORY, None) == []


@pytest.mark.parametrize(
    ("spec", "value"),
    [
        (records.INVENTORY, "not a list"),
        (records.INVENTORY, 12),
        (records.SETTINGS, [("a", 1)]),
    ],
)
def test_snapshot_records_rejects_bad_shapes(spec: records.TableSpec, value: object) -> None:
    with pytest.raises(TypeError):
        records.snapshot_records(spec, value)


def test_explode_lots_skips_missing_and_placeholder_lots() -> None:
    assays = [
        {
            "id": 1,
            "lots": {
                "poBase": [{"lot": "A", "cycles": 2}, {"lot": "N/A", "cycles": 1}, {"lot": ""}],
                "tiras": [{"lot": "T-1"}],
            },
        },
        {"id": None, "lots": {"poBase": [{"lot": "B"}]}},
        {"id": 2, "lots": None},
    ]

    exploded = records.explode_lots(assays)

    assert [row for _, row in exploded] == [(1, "poBase", "A", 2), (1, "tiras", "T-1", 0)]


def test_group_lots_regroups_and_deduplicates() -> None:
    rows = [
        {"assay_id": 1, "reagent_type": "poBase", "lot": "A", "cycles": 2},
        {"assay_id": 1, "reagent_type": "poBase", "lot": "A", "cycles": 2},
        {"assay_id": 1, "reagent_type": "tiras", "lot": "T", "cycles": 1},
        {"assay_id": 2, "reagent_type": "poBase", "lot": "B", "cycles": 0},
    ]

    assert records.group_lots(rows) == {
        1: {"poBase": [{"lot": "A", "cycles": 2}], "tiras": [{"lot": "T", "cycles": 1}]},
        2: {"poBase": [{"lot": "B", "cycles": 0}]},
    }


def test_record_id_joins_composite_keys() -> None:
    assert records.record_id((5,)) == 5
    assert records.record_id((5, "poBase", "A")) == "5-poBase-A"
