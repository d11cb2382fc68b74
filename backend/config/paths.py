"""
Centralized path configuration for LayerLens
Ensures all modules use consistent, volume-mounted paths
"""

import os

# Base paths - these MUST use absolute paths to the volume mount
# The /app/data directory is mounted as a volume in Docker
DATA_DIR = os.getenv('LAYERLENS_DATA_DIR', '/app/data')

# Downloaded layer archives, stored in registry blob layout
LAYER_CACHE_DIR = os.path.join(DATA_DIR, 'layers')

# Application logs
LOG_DIR = os.path.join(DATA_DIR, 'logs')

# For development/testing outside Docker
if not os.path.exists('/app') and 'LAYERLENS_DATA_DIR' not in os.environ:
    # Running locally, use relative paths
    DATA_DIR = './data'
    LAYER_CACHE_DIR = os.path.join(DATA_DIR, 'layers')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, LAYER_CACHE_DIR, LOG_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments
