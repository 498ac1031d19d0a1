"""
Constants, thresholds, platform endpoints and the shared beacon table.
"""

AGENT_VERSION = "1.3.0"

# ─── Polling / scheduling ────────────────────────────────────────
DEFAULT_COOLDOWN_SEC = 4.0         # Pause between two rollcall fetches
SCHEDULER_TICK_SEC = 30            # Window evaluation period
TRANSITION_DELAY_SEC = 3.0         # Gap between engine stop and restart
DEFAULT_WINDOW_START = "08:00"
DEFAULT_WINDOW_END = "22:00"

# ─── Numeric rollcalls ───────────────────────────────────────────
NUMBER_CODE_MIN = 0
NUMBER_CODE_MAX = 9999
BRUTEFORCE_BATCH_SIZE = 200        # Concurrent submissions per batch

# ─── Auth expiry ─────────────────────────────────────────────────
AUTH_NOTIFY_INTERVAL_SEC = 24 * 60 * 60

# ─── Network ─────────────────────────────────────────────────────
API_TIMEOUT = 15
IDENTITY_HOST = "identity.zju.edu.cn"
COURSES_BASE = "https://courses.zju.edu.cn"
ROLLCALLS_URL = COURSES_BASE + "/api/radar/rollcalls"
RADAR_ANSWER_URL = COURSES_BASE + "/api/rollcall/{rid}/answer?api_version=1.1.2"
NUMBER_ANSWER_URL = COURSES_BASE + "/api/rollcall/{rid}/answer_number_rollcall"
DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
RADAR_ACCURACY = 68
ON_CALL_FINE = "on_call_fine"
ON_CALL_STATUSES = frozenset({"on_call", "on_call_fine"})

# ─── Logs ────────────────────────────────────────────────────────
RECENT_LOG_SIZE = 200

# ─── Sphere fit ──────────────────────────────────────────────────
EARTH_RADIUS_M = "6372999.26"      # Kept as text, parsed at working precision
FIT_PRECISION_DPS = 100
FIT_MAX_ITER = 30
FIT_JACOBIAN_EPS = "1e-12"
FIT_STEP_TOL = "1e-14"
FIT_DET_EPS = "1e-24"           # Relative to the diagonal product

# ─── Beacon points (lon, lat), enumeration order matters ─────────
BEACON_POINTS = {
    "ZJGD1": (120.089136, 30.302331),   # Zijingang east teaching building 1
    "ZJGX1": (120.085042, 30.30173),    # Zijingang west teaching building
    "ZJGB1": (120.077135, 30.305142),   # Zijingang north teaching building
    "YQ4":   (120.122176, 30.261555),   # Yuquan building 4
    "YQ1":   (120.123853, 30.262544),   # Yuquan building 1
    "YQ7":   (120.120344, 30.263907),   # Yuquan building 7
    "ZJ1":   (120.126008, 30.192908),   # Zhijiang campus 1
    "HJC1":  (120.195939, 30.272068),   # Huajiachi campus 1
    "HJC2":  (120.198193, 30.270419),   # Huajiachi campus 2
    "ZJ2":   (120.124267, 30.19139),    # Zhijiang campus 2
    "YQSS":  (120.124001, 30.265735),   # Yuquan dormitories
    "ZJG4":  (120.073427, 30.299757),   # Zijingang far west
}
DEFAULT_BEACON = "ZJGD1"
