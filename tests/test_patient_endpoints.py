def test_provider_lists_patients(client, make_token, auth_header):
    response = client.get("/patients", headers=auth_header(make_token(role="provider")))

    assert response.status_code == 200
    names = [patient["name"] for patient in response.json()["data"]]
    assert names == ["John Doe", "Jane Smith"]


def test_patient_cannot_list_patients(client, make_token, auth_header):
    response = client.get("/patients", headers=auth_header(make_token(role="patient")))

    assert response.status_code == 403
    assert response.json()["error"] == "Insufficient permissions"


def test_patient_reads_own_record(client, make_token, auth_header):
    token = make_token(fhir_patient_id="example-patient-123")

    response = client.get("/patients/me", headers=auth_header(token))

    assert response.status_code == 200
    assert response.json()["data"]["name"] == "John Doe"


def test_own_record_requires_patient_context(client, make_token, auth_header):
    response = client.get("/patients/me", headers=auth_header(make_token(role="admin")))

    assert response.status_code == 403
    assert response.json()["error"] == "Patient context required"


def test_own_record_not_found(client, make_token, auth_header):
    token = make_token(fhir_patient_id="patient-unknown")

    response = client.get("/patients/me", headers=auth_header(token))

    assert response.status_code == 404
    assert response.json()["success"] is False
