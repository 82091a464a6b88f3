from sqlalchemy.exc import SQLAlchemyError

import main
from forecast.models import TimeSeriesRecord

PREDICT_BODY = {
    "username": "alice",
    "fromDate": "2024-01-01",
    "fromTime": "00",
    "toDate": "2024-01-02",
    "toTime": "00",
}


def _user_records(username, values, day=1):
    return [
        TimeSeriesRecord(data_type=f"user-{username}", year=2024, month=1, day=day, hour=h, value=v)
        for h, v in enumerate(values)
    ]


# --- /predict ---


def test_predict_returns_token(client, table, launcher):
    r = client.post("/predict", json=PREDICT_BODY)

    assert r.status_code == 200
    token = r.json()["token"]
    assert isinstance(token, str) and token
    assert table.is_current("alice", token)
    launcher.get("alice").wait(10)


def test_second_predict_supersedes_first(client, store, launcher):
    t1 = client.post("/predict", json=PREDICT_BODY).json()["token"]
    t2 = client.post("/predict", json=PREDICT_BODY).json()["token"]
    assert t1 != t2

    store.insert_many(_user_records("alice", [1.0, 2.0]))
    r = client.post("/load/day-data", json={"username": "alice", "token": t1})
    assert r.json() == {"data": [], "end": False}

    r = client.post("/load/day-data", json={"username": "alice", "token": t2})
    assert r.json() == {"data": [{"date": "2024-01-01", "yhat": 3.0}], "end": False}
    launcher.get("alice").wait(10)


def test_predict_clears_previous_results(client, store, launcher):
    store.insert_many(_user_records("alice", [5.0]))
    client.post("/predict", json=PREDICT_BODY)
    assert store.find("user-alice") == []
    launcher.get("alice").wait(10)


def test_predict_store_error_is_400(client, store, monkeypatch):
    def broken(*data_types):
        raise SQLAlchemyError("connection refused")

    monkeypatch.setattr(store, "delete_many", broken)
    r = client.post("/predict", json=PREDICT_BODY)

    assert r.status_code == 400
    assert "connection refused" in r.json()["error"]


def test_predict_requires_fields(client):
    r = client.post("/predict", json={"username": "alice"})
    assert r.status_code == 422


# --- polling ---


def test_unregistered_token_gets_stale_shape(client, store):
    store.insert_many(_user_records("alice", [1.0, 2.0]))

    for path in ("/load/day-data", "/load/hour-data"):
        r = client.post(path, json={"username": "alice", "token": "never-issued"})
        assert r.status_code == 200
        assert r.json() == {"data": [], "end": False}


def test_missing_token_is_stale(client, table):
    table.register("alice")
    r = client.post("/load/hour-data", json={"username": "alice"})
    assert r.json() == {"data": [], "end": False}


def test_day_data_sums_one_day(client, store, table):
    token = table.register("alice")
    store.insert_many(_user_records("alice", [3.0, 4.0, 5.0]))

    r = client.post("/load/day-data", json={"username": "alice", "token": token})
    assert r.status_code == 200
    assert r.json() == {"data": [{"date": "2024-01-01", "yhat": 12}], "end": False}


def test_day_data_splits_days(client, store, table):
    token = table.register("alice")
    store.insert_many(_user_records("alice", [1.0, 2.0], day=1) + _user_records("alice", [10.0], day=2))

    r = client.post("/load/day-data", json={"username": "alice", "token": token})
    assert r.json()["data"] == [
        {"date": "2024-01-01", "yhat": 3.0},
        {"date": "2024-01-02", "yhat": 10.0},
    ]


def test_hour_data_lists_every_record(client, store, table):
    token = table.register("alice")
    store.insert_many(_user_records("alice", [3.0, 4.0]))

    r = client.post("/load/hour-data", json={"username": "alice", "token": token})
    assert r.json() == {
        "data": [
            {"date": "2024-01-01 00", "yhat": 3.0},
            {"date": "2024-01-01 01", "yhat": 4.0},
        ],
        "end": False,
    }


def test_end_flag_follows_completion(client, table):
    token = table.register("alice")
    r = client.post("/load/hour-data", json={"username": "alice", "token": token})
    assert r.json()["end"] is False

    table.mark_complete("alice", token)
    for path in ("/load/day-data", "/load/hour-data"):
        r = client.post(path, json={"username": "alice", "token": token})
        assert r.json()["end"] is True


def test_polling_store_error_is_400(client, table):
    token = table.register("alice")

    class BrokenStore:
        def find(self, *data_types):
            raise SQLAlchemyError("query failed")

    main.app.dependency_overrides[main.get_store] = lambda: BrokenStore()
    r = client.post("/load/day-data", json={"username": "alice", "token": token})

    assert r.status_code == 400
    assert "query failed" in r.json()["error"]


# --- /add/hour-data ---


def test_add_hour_data_with_stale_token_says_stop(client, store, table):
    store.insert_many(_user_records("alice", [7.0]))
    table.register("alice")

    r = client.post(
        "/add/hour-data",
        json={"username": "alice", "token": "old", "data": [{"dateTime": "2024-01-01 05", "yhat": 1.0}]},
    )

    assert r.status_code == 200
    assert r.json() == {"message": "STOP"}
    assert [(rec.hour, rec.value) for rec in store.find("user-alice")] == [(0, 7.0)]


def test_add_hour_data_replaces_user_batch(client, store, table):
    token = table.register("alice")
    store.insert_many(_user_records("bob", [1.0]))

    first = [{"dateTime": "2024-01-01 00", "yhat": 1.0}, {"dateTime": "2024-01-01 01", "yhat": 2.0}]
    r = client.post("/add/hour-data", json={"username": "alice", "token": token, "data": first})
    assert r.json() == {"ok": True, "inserted": 2}

    second = [{"dateTime": "2024-01-01 02", "yhat": 9.0}]
    client.post("/add/hour-data", json={"username": "alice", "token": token, "data": second})

    recs = store.find("user-alice")
    assert [(r.year, r.month, r.day, r.hour, r.value) for r in recs] == [(2024, 1, 1, 2, 9.0)]
    assert len(store.find("user-bob")) == 1


def test_add_hour_data_requires_dated_labels(client, table):
    token = table.register("alice")
    r = client.post(
        "/add/hour-data",
        json={"username": "alice", "token": token, "data": [{"dateTime": "05", "yhat": 1.0}]},
    )
    assert r.status_code == 400


def test_pushed_hours_feed_polling(client, table):
    token = table.register("alice")
    data = [{"dateTime": f"2024-01-01 {h:02d}", "yhat": v} for h, v in enumerate([3.0, 4.0, 5.0])]
    client.post("/add/hour-data", json={"username": "alice", "token": token, "data": data})

    r = client.post("/load/day-data", json={"username": "alice", "token": token})
    assert r.json()["data"] == [{"date": "2024-01-01", "yhat": 12.0}]


# --- temperature and cached prediction data ---


def test_temp_round_trip(client):
    temps = {"2024-01-01 00": -1.5, "2024-01-01 13": 4.0, "07": 2.25}

    r = client.post("/add/temp", json=temps)
    assert r.status_code == 200
    assert r.json() == {"ok": True, "inserted": 3}

    r = client.post("/load/temp", json={})
    assert r.status_code == 200
    assert r.json() == temps


def test_add_temp_replaces_previous(client):
    client.post("/add/temp", json={"2024-01-01 00": 1.0})
    client.post("/add/temp", json={"2024-01-02 00": 2.0})
    assert client.post("/load/temp", json={}).json() == {"2024-01-02 00": 2.0}


def test_add_temp_rejects_bad_label(client):
    r = client.post("/add/temp", json={"yesterday": 1.0})
    assert r.status_code == 400
    assert "error" in r.json()


def test_predict_data_round_trip(client):
    body = {"act": {"2024-01-01 00": 500.0, "2024-01-01 01": 510.0}, "avg": {"2024-01-01 00": 480.0}}

    r = client.post("/add/predict-data", json=body)
    assert r.json() == {"ok": True, "inserted": 3}
    assert client.post("/load/predict-data", json={}).json() == body


def test_load_predict_data_empty(client):
    assert client.post("/load/predict-data", json={}).json() == {}


def test_predict_data_leaves_other_types(client, store):
    client.post("/add/temp", json={"05": 3.0})
    client.post("/add/predict-data", json={"act": {"2024-01-01 00": 1.0}})
    assert client.post("/load/temp", json={}).json() == {"05": 3.0}


def test_list_records(client):
    client.post("/add/temp", json={"2024-01-01 05": 3.0})

    r = client.get("/")
    assert r.status_code == 200
    (rec,) = r.json()
    assert rec["dataType"] == "temp"
    assert (rec["year"], rec["month"], rec["day"], rec["hour"], rec["value"]) == (2024, 1, 1, 5, 3.0)


# --- ambient ---


def test_healthz(client, table):
    table.register("alice")
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "storage": "sqlite", "jobs": 1}


def test_api_key_enforced_when_configured(client, monkeypatch):
    monkeypatch.setattr(main, "BACKEND_API_KEY", "secret")

    assert client.post("/load/temp", json={}).status_code == 401
    assert client.post("/load/temp", json={}, headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.post("/load/temp", json={}, headers={"X-API-Key": "secret"}).status_code == 200
    assert client.get("/healthz").status_code == 200


def test_temp_labels_come_back_zero_padded(client):
    client.post("/add/temp", json={"2024-1-1 5": 1.0, "7": 2.0})
    assert client.post("/load/temp", json={}).json() == {"2024-01-01 05": 1.0, "07": 2.0}
