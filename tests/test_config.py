from app.core.config import get_settings, parse_cors_origins


def test_parse_cors_origins_csv():
    value = "http://localhost:5173, http://localhost:3000"
    assert parse_cors_origins(value) == [
        "http://localhost:5173",
        "http://localhost:3000",
    ]


def test_parse_cors_origins_json_list():
    value = '["http://localhost:5173", "https://hotspot.example.com"]'
    assert parse_cors_origins(value) == [
        "http://localhost:5173",
        "https://hotspot.example.com",
    ]


def test_parse_cors_origins_deduplicates():
    value = "http://localhost:5173,http://localhost:5173"
    assert parse_cors_origins(value) == ["http://localhost:5173"]


def test_settings_read_mpesa_environment():
    settings = get_settings()
    assert settings.mpesa_shortcode == "174379"
    assert settings.mpesa_transaction_type == "CustomerPayBillOnline"
    assert settings.mpesa_country_code == "254"
