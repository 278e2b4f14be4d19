"""Internal constants shared across the library."""

BASE_URL = "https://dilinkappoversea-eu.byd.auto"
USER_AGENT = "okhttp/4.12.0"

SUCCESS_CODE = "0"
SESSION_EXPIRED_CODES: frozenset[str] = frozenset({"1002", "1005", "1010"})
RATE_LIMIT_CODE = "6024"
ENDPOINT_NOT_SUPPORTED_CODES: frozenset[str] = frozenset({"1001"})
CONTROL_PASSWORD_ERROR_CODES: dict[str, str] = {
    "5005": "Wrong control password",
    "5006": "Control password locked for today (too many attempts)",
}
REMOTE_CONTROL_SERVICE_ERROR_CODES: frozenset[str] = frozenset({"1009"})

# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

LOGIN_ENDPOINT = "/app/account/login"
VEHICLE_LIST_ENDPOINT = "/app/account/getAllListByUserId"
REALTIME_TRIGGER_ENDPOINT = "/vehicleInfo/vehicle/vehicleRealTimeRequest"
REALTIME_POLL_ENDPOINT = "/vehicleInfo/vehicle/vehicleRealTimeResult"
GPS_TRIGGER_ENDPOINT = "/control/getGpsInfo"
GPS_POLL_ENDPOINT = "/control/getGpsInfoResult"
REMOTE_CONTROL_TRIGGER_ENDPOINT = "/control/remoteControl"
REMOTE_CONTROL_POLL_ENDPOINT = "/control/remoteControlResult"
ENERGY_ENDPOINT = "/vehicleInfo/vehicle/getEnergyConsumption"
BROKER_ENDPOINT = "/app/emqAuth/getEmqBrokerIp"

REMOTE_CONTROL_ENDPOINTS: frozenset[str] = frozenset({REMOTE_CONTROL_TRIGGER_ENDPOINT, REMOTE_CONTROL_POLL_ENDPOINT})

# ------------------------------------------------------------------
# Push transport
# ------------------------------------------------------------------

MQTT_CLIENT_ID_PREFIX = "oversea_"
MQTT_TOPIC_PREFIX = "oversea/res/"
MQTT_DEFAULT_PORT = 8883

PUSH_EVENT_REALTIME = "vehicleInfo"
PUSH_EVENT_REMOTE_CONTROL = "remoteControl"
