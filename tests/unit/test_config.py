"""
Tests for configuration resolution, validation and setup guidance.
"""

import pytest

from datalayer.database.config import (
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_POOL_MAX,
    DEFAULT_SQLITE_FILENAME,
    DEFAULT_SQLITE_LOCK_TIMEOUT_MS,
    DEFAULT_URL_CONNECT_TIMEOUT_MS,
    ConfigResolver,
    DatabaseBackend,
    PostgresConfig,
    SqliteConfig,
    SupabaseConfig,
    describe_setup,
    is_managed_host,
    parse_connection_string,
    summarize_config,
    validate_config,
)
from datalayer.database.errors import ConfigurationError


def resolve(env):
    return ConfigResolver(env, load_env_file=False).resolve()


class TestBackendResolution:
    """Backend selection follows override, URL, discrete vars, SDK, environment."""

    def test_empty_environment_defaults_to_sqlite(self):
        config = resolve({})
        assert isinstance(config, SqliteConfig)
        assert config.filename == DEFAULT_SQLITE_FILENAME

    def test_production_defaults_to_postgres(self):
        config = resolve({"APP_ENV": "production"})
        assert isinstance(config, PostgresConfig)
        assert config.explicit_backend is False

    def test_explicit_override_wins_over_connection_string(self):
        config = resolve({
            "DATABASE_BACKEND": "sqlite",
            "SUPABASE_DB_URL": "postgresql://u:p@db.example.com:5432/app",
        })
        assert isinstance(config, SqliteConfig)
        assert config.explicit_backend is True

    @pytest.mark.parametrize("alias", ["postgres", "relational", "POSTGRESQL"])
    def test_backend_aliases(self, alias):
        config = resolve({"DATABASE_BACKEND": alias, "DB_HOST": "localhost"})
        assert config.backend == DatabaseBackend.POSTGRESQL

    def test_unknown_backend_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            resolve({"DATABASE_BACKEND": "oracle"})
        assert "oracle" in exc_info.value.message

    def test_connection_string_selects_postgres(self):
        config = resolve({"DATABASE_URL": "postgresql://app:pw@db.internal:5433/appdb"})
        assert isinstance(config, PostgresConfig)
        assert config.host == "db.internal"
        assert config.port == 5433
        assert config.database == "appdb"
        assert config.user == "app"
        assert config.password == "pw"
        assert config.connect_timeout_ms == DEFAULT_URL_CONNECT_TIMEOUT_MS

    def test_supabase_db_url_preferred_over_database_url(self):
        config = resolve({
            "SUPABASE_DB_URL": "postgresql://a:b@first.example.com/one",
            "DATABASE_URL": "postgresql://a:b@second.example.com/two",
        })
        assert config.host == "first.example.com"

    def test_discrete_variables(self):
        config = resolve({
            "DB_HOST": "pg.local",
            "DB_PORT": "6000",
            "DB_NAME": "relay",
            "DB_USER": "relay",
            "DB_PASSWORD": "secret",
            "DB_SSL": "true",
            "DB_POOL_MAX": "5",
        })
        assert isinstance(config, PostgresConfig)
        assert config.port == 6000
        assert config.ssl is True
        assert config.pool_max == 5
        assert config.connect_timeout_ms == DEFAULT_CONNECT_TIMEOUT_MS
        assert config.from_connection_string is False

    def test_sdk_credentials_select_supabase(self):
        config = resolve({
            "SUPABASE_URL": "https://proj.supabase.co",
            "SUPABASE_SERVICE_ROLE_KEY": "key",
        })
        assert isinstance(config, SupabaseConfig)
        assert config.db_schema == "public"

    def test_sdk_url_without_key_falls_through(self):
        config = resolve({"SUPABASE_URL": "https://proj.supabase.co"})
        assert isinstance(config, SqliteConfig)

    def test_non_integer_port_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            resolve({"DB_HOST": "localhost", "DB_PORT": "fivefour"})
        assert any("DB_PORT" in e for e in exc_info.value.errors)

    def test_resolved_config_is_cached_until_reset(self):
        env = {"DATABASE_BACKEND": "sqlite"}
        resolver = ConfigResolver(env, load_env_file=False)
        first = resolver.resolve()
        env["DATABASE_BACKEND"] = "postgresql"
        assert resolver.resolve() is first

        resolver.reset()
        assert isinstance(resolver.resolve(), PostgresConfig)

    def test_sqlite_lock_timeout(self):
        assert resolve({}).lock_timeout_ms == DEFAULT_SQLITE_LOCK_TIMEOUT_MS
        assert resolve({"SQLITE_LOCK_TIMEOUT": "250"}).lock_timeout_ms == 250
        with pytest.raises(ConfigurationError):
            resolve({"SQLITE_LOCK_TIMEOUT": "soon"})

    def test_config_is_immutable(self):
        config = resolve({})
        with pytest.raises(Exception):
            config.filename = "other.db"

    def test_migrations_dir_from_environment(self):
        resolver = ConfigResolver({"MIGRATIONS_DIR": "/srv/migrations"}, load_env_file=False)
        assert str(resolver.migrations_dir) == "/srv/migrations"


class TestManagedHosts:
    """Managed Supabase hosts always get TLS."""

    @pytest.mark.parametrize("host,expected", [
        ("db.abcdefgh.supabase.co", True),
        ("aws-0-us-east-1.pooler.supabase.com", True),
        ("supabase.com", True),
        ("notsupabase.com", False),
        ("localhost", False),
        (None, False),
    ])
    def test_is_managed_host(self, host, expected):
        assert is_managed_host(host) is expected

    def test_sslmode_disable_is_overridden_for_managed_host(self):
        config = parse_connection_string(
            "postgresql://postgres:pw@aws-0-eu.pooler.supabase.com:6543/postgres?sslmode=disable"
        )
        assert config.ssl is True
        assert config.ssl_explicitly_disabled is True

        result = validate_config(config)
        assert result.is_valid
        assert any("TLS" in w for w in result.warnings)

    def test_sslmode_disable_respected_for_private_host(self):
        config = parse_connection_string("postgresql://u:p@10.0.0.5/app?sslmode=disable")
        assert config.ssl is False

    def test_sslmode_require_enables_tls(self):
        config = parse_connection_string("postgresql://u:p@10.0.0.5/app?sslmode=require")
        assert config.ssl is True
        assert config.options["sslmode"] == "require"

    def test_discrete_managed_host_forces_tls(self):
        config = resolve({
            "DB_HOST": "db.abcdefgh.supabase.co",
            "DB_NAME": "postgres",
            "DB_USER": "postgres",
            "DB_PASSWORD": "pw",
            "DB_SSL": "false",
        })
        assert config.ssl is True

    def test_managed_host_without_password_is_error(self):
        config = parse_connection_string("postgresql://postgres@db.abcdefgh.supabase.co:5432/postgres")
        result = validate_config(config)
        assert not result.is_valid
        assert any("password" in e for e in result.errors)

    def test_unusual_port_on_managed_host_warns(self):
        config = parse_connection_string("postgresql://postgres:pw@db.abcdefgh.supabase.co:7000/postgres")
        result = validate_config(config)
        assert any("7000" in w for w in result.warnings)

    def test_invalid_scheme_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_connection_string("mysql://u:p@host/db")


class TestValidation:
    """Errors block start-up, warnings do not."""

    def test_missing_discrete_fields_are_errors(self):
        result = validate_config(PostgresConfig(environment="production"))
        assert not result.is_valid
        joined = " ".join(result.errors)
        for var in ("DB_HOST", "DB_NAME", "DB_USER", "DB_PASSWORD"):
            assert var in joined

    def test_port_out_of_range(self, postgres_config):
        config = postgres_config.model_copy(update={"port": 70000})
        result = validate_config(config)
        assert any("port" in e for e in result.errors)

    def test_pool_size_below_one(self, postgres_config):
        result = validate_config(postgres_config.model_copy(update={"pool_max": 0}))
        assert any("DB_POOL_MAX" in e for e in result.errors)

    def test_non_default_pool_size_warns(self, postgres_config):
        result = validate_config(postgres_config.model_copy(update={"pool_max": 50}))
        assert result.is_valid
        assert any(str(DEFAULT_POOL_MAX) in w for w in result.warnings)

    def test_negative_timeout(self, postgres_config):
        result = validate_config(postgres_config.model_copy(update={"query_timeout_ms": -1}))
        assert any("DB_QUERY_TIMEOUT" in e for e in result.errors)

    def test_missing_app_env_warns(self):
        result = validate_config(SqliteConfig(filename="./data/dev.db"))
        assert any("APP_ENV" in w for w in result.warnings)

    def test_empty_sqlite_filename(self):
        result = validate_config(SqliteConfig(filename="", environment="test"))
        assert not result.is_valid

    def test_sqlite_in_production_warns(self, tmp_path):
        config = SqliteConfig(filename=str(tmp_path / "prod.db"), environment="production")
        result = validate_config(config)
        assert result.is_valid
        assert any("production" in w for w in result.warnings)

    def test_sqlite_missing_directory_warns(self, tmp_path):
        config = SqliteConfig(filename=str(tmp_path / "missing" / "x.db"), environment="test")
        result = validate_config(config)
        assert any("created automatically" in w for w in result.warnings)

    def test_supabase_requires_url_and_key(self):
        result = validate_config(SupabaseConfig(environment="test"))
        assert len(result.errors) == 2

    def test_supabase_non_https_warns(self):
        config = SupabaseConfig(url="http://localhost:54321", api_key="k", environment="test")
        result = validate_config(config)
        assert result.is_valid
        assert any("https" in w for w in result.warnings)


class TestSummaryAndGuidance:
    """Operator-facing output never leaks secrets."""

    def test_summary_redacts_password(self, postgres_config):
        summary = summarize_config(postgres_config)
        assert summary["type"] == "postgresql"
        assert summary["config"]["password_set"] is True
        assert "secret" not in repr(summary)

    def test_summary_redacts_api_key(self, supabase_config):
        summary = summarize_config(supabase_config)
        assert summary["config"]["api_key_set"] is True
        assert "service-role-key" not in repr(summary)

    def test_summary_includes_validation_counts(self):
        summary = summarize_config(SqliteConfig(filename="", environment="test"))
        assert summary["validation"]["is_valid"] is False
        assert summary["validation"]["error_count"] == 1

    def test_setup_guide_per_backend(self, postgres_config, supabase_config):
        assert "SQLite Configuration" in describe_setup(SqliteConfig(filename="x.db"))
        assert "Supabase SDK Configuration" in describe_setup(supabase_config)
        assert "PostgreSQL Configuration" in describe_setup(postgres_config)
        assert "Basic Setup Instructions" in describe_setup(None)

    def test_setup_guide_never_contains_password(self, postgres_config):
        assert "secret" not in describe_setup(postgres_config)
