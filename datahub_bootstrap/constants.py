"""Global constants for connection defaults, TLS artifacts and readiness waits."""

DEFAULT_PORTS = {
    "http": 80,
    "https": 443,
    "ws": 80,
    "wss": 443,
    "postgres": 5432,
    "postgresql": 5432,
    "mysql": 3306,
    "opensearch": 9200,
    "elasticsearch": 9200,
    "kafka": 9092,
    "plaintext": 9092,
    "ssl": 9092,
    "sasl_plaintext": 9092,
    "sasl_ssl": 9092,
    "redis": 6379,
    "rediss": 6379,
}
FALLBACK_PORT = 80

TLS_SCHEMES = {"https", "wss", "ssl", "sasl_ssl", "rediss"}

JDBC_SUBPROTOCOLS = {
    "postgres": "postgresql",
    "postgresql": "postgresql",
    "mysql": "mysql",
}
DEFAULT_SSLMODE = "require"
DEFAULT_SEARCH_SSL_PROTOCOL = "TLSv1.2"

CERTS_DIR_PREFIX = "datahub-certs-"
CLIENT_CERT_FILENAME = "kafka-client.crt"
CLIENT_KEY_FILENAME = "kafka-client.key"
CA_CERT_FILENAME = "kafka-ca-{index}.crt"
KEYSTORE_FILENAME = "kafka-client-keystore.p12"
TRUSTSTORE_FILENAME = "kafka-truststore.jks"
KEYSTORE_ALIAS = "kafka-client"
CA_ALIAS = "kafka-ca-{index}"
# Ephemeral stores live in an owner-only directory removed with the container.
STORE_PASSWORD = "changeit"

CERTS_DIR_MODE = 0o700
PRIVATE_KEY_MODE = 0o600
CERTIFICATE_MODE = 0o640

TOOL_TIMEOUT = 60
CERT_EXPIRY_WARNING_DAYS = 30

DEFAULT_WAIT_ATTEMPTS = 40
DEFAULT_WAIT_INTERVAL = 30.0
DEFAULT_CHECK_TIMEOUT = 5.0
MAX_CHECK_TIMEOUT = 10.0
DEFAULT_FAILURE_PAUSE = 30.0
DEFAULT_PROBE_WORKERS = 4
PROGRESS_LOG_EVERY = 2

DEFAULT_SYSTEM_CLIENT_ID = "__datahub_system"
GENERATED_SECRET_BYTES = 32

DEFAULT_JAVA_MEMORY_OPTS = "-Xms512m -Xmx1024m"
FRONTEND_JAVA_OPTS = (
    "-Dhttp.port=9002",
    "-Dconfig.file=datahub-frontend/conf/application.conf",
    "-Djava.security.auth.login.config=datahub-frontend/conf/jaas.conf",
    "-Dlogback.configurationFile=datahub-frontend/conf/logback.xml",
    "-Dlogback.debug=false",
    "-Dpidfile.path=/dev/null",
)
FRONTEND_COMMAND = "/datahub-frontend/bin/datahub-frontend"

REDACTED_SUFFIX_LENGTH = 3
SECRET_MARKERS = ("PASSWORD", "SECRET", "JAAS", "KEY", "TOKEN")
