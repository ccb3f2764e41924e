import os

# Logging Configuration
LOG_LEVEL = os.getenv("NEURASM_LOG_LEVEL", "INFO").upper()

# Learned proposer
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash-lite")
INFERENCE_TIMEOUT = float(os.getenv("NEURASM_INFERENCE_TIMEOUT", "10.0"))
CONFIDENCE_THRESHOLD = float(os.getenv("NEURASM_CONFIDENCE_THRESHOLD", "0.5"))

# Windowing
WINDOW_SIZE = int(os.getenv("NEURASM_WINDOW_SIZE", "4"))
WINDOW_OVERLAP = int(os.getenv("NEURASM_WINDOW_OVERLAP", "2"))

# Verification
SAMPLE_COUNT = int(os.getenv("NEURASM_SAMPLE_COUNT", "1000"))
VERIFICATION_TIMEOUT = float(os.getenv("NEURASM_VERIFICATION_TIMEOUT", "5.0"))
SYMBOLIC_MAX_INSTRUCTIONS = int(os.getenv("NEURASM_SYMBOLIC_MAX_INSTRUCTIONS", "12"))
SYMBOLIC_MEMORY = os.getenv("NEURASM_SYMBOLIC_MEMORY", "1") not in ("0", "false", "False")
SEED = int(os.getenv("NEURASM_SEED", "0"))

# Global re-verification
GLOBAL_REVERIFY_INTERVAL = int(os.getenv("NEURASM_GLOBAL_REVERIFY_INTERVAL", "8"))
GLOBAL_SAMPLES = int(os.getenv("NEURASM_GLOBAL_SAMPLES", "256"))
GLOBAL_MAX_STEPS = int(os.getenv("NEURASM_GLOBAL_MAX_STEPS", "10000"))

# Budgets
MAX_ITERATIONS = int(os.getenv("NEURASM_MAX_ITERATIONS", "10000"))
TIME_BUDGET = float(os.getenv("NEURASM_TIME_BUDGET", "300.0"))

# Scoring: cycles credited per byte saved
SIZE_WEIGHT = float(os.getenv("NEURASM_SIZE_WEIGHT", "0.05"))

# Worker pool
QUEUE_CAPACITY = int(os.getenv("NEURASM_QUEUE_CAPACITY", "64"))
