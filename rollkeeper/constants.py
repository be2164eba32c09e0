DEFAULT_NAMESPACE = "default"
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_DEADLINE = 300.0
DEFAULT_CLUSTER_TIMEOUT = 10.0
DEFAULT_TOPIC = "rollouts"

# Seconds without a heartbeat after which another engine may take over an
# active rollout.
DEFAULT_LEASE_TTL = 30.0

# Seconds between re-reads of a rotating service-account token file.
TOKEN_REFRESH_INTERVAL = 60.0

# Consecutive healthy observations required before a rollout is committed.
HEALTHY_OBSERVATIONS_REQUIRED = 2

SERVICE_ACCOUNT_TOKEN = "/var/run/secrets/kubernetes.io/serviceaccount/token"
SERVICE_ACCOUNT_CA = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
