"""Per-service configuration tables and environment assembly.

Each service differs only in data: which connection strings it parses,
which environment variables the Java process expects, and which
dependencies it waits for. Logical settings such as ``database.host_port``
are resolved once and then mapped onto each service's variable names.
"""
import logging
import secrets
from dataclasses import dataclass, field

from .connection import (
    EndpointDescriptor,
    format_bootstrap_servers,
    parse_bootstrap_servers,
    parse_connection_string,
)
from .constants import (
    DEFAULT_JAVA_MEMORY_OPTS,
    DEFAULT_SSLMODE,
    FRONTEND_COMMAND,
    FRONTEND_JAVA_OPTS,
    GENERATED_SECRET_BYTES,
    JDBC_SUBPROTOCOLS,
)
from .errors import MalformedConnectionString, MissingConfiguration
from .probe import CheckKind, DependencyTarget, RetryPolicy

logger = logging.getLogger(__name__)

# Input name -> (settings attribute, environment variable, human label)
INPUTS = {
    "database": ("database_url", "DATABASE_URL", "database connection string"),
    "search": ("opensearch_uri", "OPENSEARCH_URI", "search connection string"),
    "broker": ("kafka_bootstrap_server", "KAFKA_BOOTSTRAP_SERVER", "broker bootstrap servers"),
    "gms": ("datahub_gms_url", "DATAHUB_GMS_URL", "metadata service URL"),
}

LABELS = {
    "database.username": "database username",
    "database.password": "database password",
    "database.host_port": "database host",
    "database.jdbc_url": "database JDBC URL",
    "search.host": "search host",
    "search.port": "search port",
    "search.username": "search username",
    "search.password": "search password",
    "search.protocol": "search protocol",
    "search.use_ssl": "search TLS flag",
    "search.ssl_protocol": "search TLS protocol",
    "broker.bootstrap": "broker bootstrap servers",
    "broker.sasl_jaas_config": "broker SASL JAAS config",
    "broker.sasl_username": "broker SASL username",
    "broker.sasl_password": "broker SASL password",
    "keystore.location": "Kafka keystore location",
    "keystore.password": "Kafka keystore password",
    "keystore.key_password": "Kafka key password",
    "truststore.location": "Kafka truststore location",
    "truststore.password": "Kafka truststore password",
    "gms.host": "metadata service host",
    "gms.port": "metadata service port",
    "gms.protocol": "metadata service protocol",
    "gms.schema_registry_url": "schema registry URL",
    "auth.system_client_id": "system client id",
    "auth.system_client_secret": "system client secret",
    "auth.generated_client_secret": "system client secret",
    "frontend.java_opts": "frontend JVM options",
}


def label_for(key: str) -> str:
    return LABELS.get(key, key.replace(".", " ").replace("_", " "))


@dataclass(frozen=True)
class DependencySpec:
    name: str
    endpoint: str
    kind: CheckKind
    health_path: str | None = None
    secondary_path: str | None = None
    depends_on: str | None = None


@dataclass(frozen=True)
class ServiceProfile:
    name: str
    inputs: tuple[str, ...]
    required_inputs: frozenset[str]
    mappings: dict[str, str]
    required: frozenset[str] = frozenset()
    dependencies: tuple[DependencySpec, ...] = ()
    default_command: tuple[str, ...] = ()
    check_auth: bool = False


@dataclass(frozen=True)
class BootstrapResult:
    env: dict[str, str]
    argv: list[str]
    # TlsArtifacts inherited by the handed-off process, if any
    artifacts: object = field(default=None, compare=False, repr=False)

    def full_environment(self, base: dict[str, str] | None = None) -> dict[str, str]:
        """Overlay the assembled variables on ``base`` (the inherited environment)."""
        merged = dict(base or {})
        merged.update(self.env)
        return merged


EBEAN_MAPPINGS = {
    "EBEAN_DATASOURCE_USERNAME": "database.username",
    "EBEAN_DATASOURCE_PASSWORD": "database.password",
    "EBEAN_DATASOURCE_HOST": "database.host_port",
    "EBEAN_DATASOURCE_URL": "database.jdbc_url",
}

ELASTICSEARCH_MAPPINGS = {
    "ELASTICSEARCH_HOST": "search.host",
    "ELASTICSEARCH_PORT": "search.port",
    "ELASTICSEARCH_USERNAME": "search.username",
    "ELASTICSEARCH_PASSWORD": "search.password",
    "ELASTICSEARCH_USE_SSL": "search.use_ssl",
}


def _kafka_ssl_mappings(prefix: str) -> dict[str, str]:
    return {
        f"{prefix}_SSL_KEYSTORE_LOCATION": "keystore.location",
        f"{prefix}_SSL_KEYSTORE_PASSWORD": "keystore.password",
        f"{prefix}_SSL_KEYSTORE_TYPE": "keystore.type",
        f"{prefix}_SSL_KEY_PASSWORD": "keystore.key_password",
        f"{prefix}_SSL_TRUSTSTORE_LOCATION": "truststore.location",
        f"{prefix}_SSL_TRUSTSTORE_PASSWORD": "truststore.password",
        f"{prefix}_SSL_TRUSTSTORE_TYPE": "truststore.type",
    }


GMS_PROFILE = ServiceProfile(
    name="gms",
    inputs=("database", "search", "broker"),
    required_inputs=frozenset({"database", "search", "broker"}),
    mappings={
        **EBEAN_MAPPINGS,
        **ELASTICSEARCH_MAPPINGS,
        "KAFKA_BOOTSTRAP_SERVER": "broker.bootstrap",
        "SPRING_KAFKA_PROPERTIES_SASL_JAAS_CONFIG": "broker.sasl_jaas_config",
        **_kafka_ssl_mappings("SPRING_KAFKA_PROPERTIES"),
    },
    required=frozenset({"database.jdbc_url", "database.host_port", "search.host", "broker.bootstrap"}),
    dependencies=(
        DependencySpec("database", "database", CheckKind.TCP),
        DependencySpec("search", "search", CheckKind.TCP),
        DependencySpec("broker", "broker", CheckKind.TCP),
    ),
)

FRONTEND_PROFILE = ServiceProfile(
    name="frontend",
    inputs=("gms", "search", "broker"),
    required_inputs=frozenset({"gms"}),
    mappings={
        "DATAHUB_GMS_HOST": "gms.host",
        "DATAHUB_GMS_PORT": "gms.port",
        "DATAHUB_GMS_PROTOCOL": "gms.protocol",
        "ELASTIC_CLIENT_HOST": "search.host",
        "ELASTIC_CLIENT_PORT": "search.port",
        "ELASTIC_CLIENT_USERNAME": "search.username",
        "ELASTIC_CLIENT_PASSWORD": "search.password",
        "KAFKA_BOOTSTRAP_SERVER": "broker.bootstrap",
        **_kafka_ssl_mappings("KAFKA_PROPERTIES"),
        "DATAHUB_SYSTEM_CLIENT_ID": "auth.system_client_id",
        "DATAHUB_SYSTEM_CLIENT_SECRET": "auth.system_client_secret",
        "JAVA_OPTS": "frontend.java_opts",
    },
    required=frozenset({"gms.host", "gms.port", "gms.protocol"}),
    dependencies=(
        DependencySpec("gms", "gms", CheckKind.HTTP, health_path="config"),
        DependencySpec("search", "search", CheckKind.DNS),
        DependencySpec("broker", "broker", CheckKind.DNS),
    ),
    default_command=(FRONTEND_COMMAND,),
    check_auth=True,
)

ACTIONS_PROFILE = ServiceProfile(
    name="actions",
    inputs=("gms", "broker"),
    required_inputs=frozenset(),
    mappings={
        "DATAHUB_GMS_HOST": "gms.host",
        "DATAHUB_GMS_PORT": "gms.port",
        "DATAHUB_GMS_PROTOCOL": "gms.protocol",
        "SCHEMA_REGISTRY_URL": "gms.schema_registry_url",
        "KAFKA_BOOTSTRAP_SERVER": "broker.bootstrap",
        "KAFKA_PROPERTIES_SASL_USERNAME": "broker.sasl_username",
        "KAFKA_PROPERTIES_SASL_PASSWORD": "broker.sasl_password",
        **_kafka_ssl_mappings("KAFKA_PROPERTIES"),
        "DATAHUB_SYSTEM_CLIENT_SECRET": "auth.generated_client_secret",
    },
    dependencies=(
        DependencySpec(
            "gms", "gms", CheckKind.HTTP,
            health_path="health",
            secondary_path="schema-registry/api/subjects",
        ),
        DependencySpec("broker", "broker", CheckKind.DNS),
    ),
)

UPGRADE_PROFILE = ServiceProfile(
    name="upgrade",
    inputs=("database", "search", "broker"),
    required_inputs=frozenset({"database", "search", "broker"}),
    mappings={
        **EBEAN_MAPPINGS,
        **ELASTICSEARCH_MAPPINGS,
        "ELASTICSEARCH_PROTOCOL": "search.protocol",
        "ELASTICSEARCH_SSL_PROTOCOL": "search.ssl_protocol",
        "KAFKA_BOOTSTRAP_SERVER": "broker.bootstrap",
        "SPRING_KAFKA_PROPERTIES_SASL_JAAS_CONFIG": "broker.sasl_jaas_config",
        **_kafka_ssl_mappings("SPRING_KAFKA_PROPERTIES"),
    },
    required=frozenset({"database.jdbc_url", "database.host_port", "search.host", "broker.bootstrap"}),
    dependencies=(
        DependencySpec("database", "database", CheckKind.TCP),
        DependencySpec("search", "search", CheckKind.TCP),
        DependencySpec("broker", "broker", CheckKind.TCP),
    ),
)

PROFILES = {p.name: p for p in (GMS_PROFILE, FRONTEND_PROFILE, ACTIONS_PROFILE, UPGRADE_PROFILE)}


def get_profile(name: str) -> ServiceProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown service '{name}'; expected one of {', '.join(sorted(PROFILES))}") from None


@dataclass
class Endpoints:
    database: EndpointDescriptor | None = None
    search: EndpointDescriptor | None = None
    brokers: list[EndpointDescriptor] = field(default_factory=list)
    gms: EndpointDescriptor | None = None
    gms_url: str | None = None

    def primary(self, name: str) -> EndpointDescriptor | None:
        if name == "broker":
            return self.brokers[0] if self.brokers else None
        return getattr(self, name)


def resolve_endpoints(settings, profile: ServiceProfile) -> Endpoints:
    """Parse the connection strings ``profile`` needs.

    Raises:
        MissingConfiguration: If a required connection string is absent
        MalformedConnectionString: If a present connection string cannot be parsed
    """
    endpoints = Endpoints()
    for name in profile.inputs:
        attr, env_name, label = INPUTS[name]
        raw = getattr(settings, attr, None)
        if not raw:
            if name in profile.required_inputs:
                raise MissingConfiguration(label, f"{env_name} is not set")
            logger.info("%s not set; %s will not be configured", env_name, label)
            continue
        try:
            if name == "broker":
                endpoints.brokers = parse_bootstrap_servers(raw)
            else:
                setattr(endpoints, name, parse_connection_string(raw))
        except MalformedConnectionString as exc:
            raise exc.for_setting(env_name) from None
        if name == "gms":
            endpoints.gms_url = raw.strip().rstrip("/")
    return endpoints


def _jdbc_url(db: EndpointDescriptor) -> str:
    subprotocol = JDBC_SUBPROTOCOLS.get(db.scheme, db.scheme)
    sslmode = db.param("sslmode") or DEFAULT_SSLMODE
    return f"jdbc:{subprotocol}://{db.host_port}/{db.path}?sslmode={sslmode}"


def _jaas_config(username: str, password: str) -> str:
    return (
        "org.apache.kafka.common.security.plain.PlainLoginModule required "
        f'username="{username}" password="{password}";'
    )


def resolve_values(settings, endpoints: Endpoints, artifacts=None) -> dict[str, str]:
    """Derive logical settings from parsed endpoints, TLS artifacts and raw settings.

    Keys whose source is absent are left out rather than set to empty strings.
    """
    values: dict[str, str] = {}

    db = endpoints.database
    if db is not None:
        values["database.host_port"] = db.host_port
        values["database.jdbc_url"] = _jdbc_url(db)
        if db.username:
            values["database.username"] = db.username
        if db.password:
            values["database.password"] = db.password

    search = endpoints.search
    if search is not None:
        values["search.host"] = search.host
        values["search.port"] = str(search.port)
        values["search.protocol"] = search.scheme
        values["search.use_ssl"] = "true" if search.use_tls else "false"
        if search.use_tls:
            values["search.ssl_protocol"] = settings.opensearch_ssl_protocol
        if search.username:
            values["search.username"] = search.username
        if search.password:
            values["search.password"] = search.password

    if endpoints.brokers:
        values["broker.bootstrap"] = format_bootstrap_servers(endpoints.brokers)
    if settings.kafka_sasl_username:
        values["broker.sasl_username"] = settings.kafka_sasl_username
    if settings.kafka_sasl_password:
        values["broker.sasl_password"] = settings.kafka_sasl_password
    if settings.kafka_sasl_username and settings.kafka_sasl_password:
        values["broker.sasl_jaas_config"] = _jaas_config(settings.kafka_sasl_username, settings.kafka_sasl_password)

    if artifacts is not None:
        if artifacts.keystore is not None:
            values["keystore.location"] = artifacts.keystore.path
            values["keystore.password"] = artifacts.keystore.password
            values["keystore.key_password"] = artifacts.keystore.password
            values["keystore.type"] = artifacts.keystore.store_type
        if artifacts.truststore is not None:
            values["truststore.location"] = artifacts.truststore.path
            values["truststore.password"] = artifacts.truststore.password
            values["truststore.type"] = artifacts.truststore.store_type

    gms = endpoints.gms
    if gms is not None:
        values["gms.host"] = gms.host
        values["gms.port"] = str(gms.port)
        values["gms.protocol"] = gms.scheme
        values["gms.url"] = endpoints.gms_url
        values["gms.schema_registry_url"] = f"{endpoints.gms_url}/schema-registry/api/"

    values["auth.system_client_id"] = settings.datahub_system_client_id
    client_secret = settings.datahub_system_client_secret or settings.datahub_secret
    if client_secret:
        values["auth.system_client_secret"] = client_secret
        values["auth.generated_client_secret"] = client_secret
    else:
        values["auth.generated_client_secret"] = secrets.token_hex(GENERATED_SECRET_BYTES)

    memory_opts = settings.java_memory_opts or DEFAULT_JAVA_MEMORY_OPTS
    values["frontend.java_opts"] = " ".join((memory_opts,) + FRONTEND_JAVA_OPTS)

    return values


def build_targets(profile: ServiceProfile, endpoints: Endpoints, settings) -> list[DependencyTarget]:
    """Turn the profile's dependency rows into probe targets for configured endpoints."""
    optional = settings.optional_dependencies
    overrides = settings.attempt_overrides
    known = {spec.name for spec in profile.dependencies}
    for setting, names in (("WAIT_OPTIONAL_DEPENDENCIES", optional), ("WAIT_ATTEMPT_OVERRIDES", overrides)):
        for name in sorted(set(names) - known):
            logger.warning(
                "%s names unknown dependency '%s' for %s (known: %s); ignoring it",
                setting, name, profile.name, ", ".join(sorted(known)) or "none",
            )
    targets = []
    for spec in profile.dependencies:
        descriptor = endpoints.primary(spec.endpoint)
        if descriptor is None:
            logger.info("Skipping readiness check for %s: not configured", spec.name)
            continue
        policy = RetryPolicy(
            max_attempts=overrides.get(spec.name, settings.wait_max_attempts),
            interval=settings.wait_interval_seconds,
            check_timeout=settings.wait_check_timeout,
        )
        targets.append(DependencyTarget(
            name=spec.name,
            descriptor=descriptor,
            kind=spec.kind,
            required=spec.name not in optional,
            policy=policy,
            health_path=spec.health_path,
            secondary_path=spec.secondary_path,
            depends_on=spec.depends_on,
        ))
    return targets


def assemble(profile: ServiceProfile, values: dict[str, str], argv: list[str] | None) -> BootstrapResult:
    """Map logical values onto the service's environment variable names.

    Raises:
        MissingConfiguration: If a required logical value is absent or no command is available
    """
    env = {}
    for env_name, key in profile.mappings.items():
        value = values.get(key)
        if value is None or value == "":
            if key in profile.required:
                raise MissingConfiguration(label_for(key), f"needed for {env_name}")
            continue
        env[env_name] = value

    command = list(argv) if argv else list(profile.default_command)
    if not command:
        raise MissingConfiguration("command", "no command given and the service has no default")
    return BootstrapResult(env=env, argv=command)
