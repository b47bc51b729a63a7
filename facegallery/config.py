# 常见系统字体候选（macOS/Windows/Linux），按需扩展
FONT_LIST = [
    # macOS
    "/System/Library/Fonts/Supplemental/Arial Unicode.ttf",
    "/Library/Fonts/Arial Unicode.ttf",
    "/System/Library/Fonts/Helvetica.ttc",
    # Windows (注意字符串中的反斜杠已转义)
    "C:\\Windows\\Fonts\\segoeui.ttf",
    "C:\\Windows\\Fonts\\arial.ttf",
    "C:\\Windows\\Fonts\\arialuni.ttf",
    # 常见 Linux 字体
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/noto/NotoSans-Regular.ttf",
    "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc",
    "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
]

# Local storage: one JSON document under a fixed key.
STORAGE_DIR = "data/storage"
STORAGE_KEY = "face_recognition_data"

# Bundled reference identities: label -> image count ({root}/{label}/{1..N}.jpg) or glob pattern.
REFERENCE_ROOT = "labeled_images"
REFERENCE_LABELS = {
    "Budi": 2,
    "Siti": 2,
}

# Euclidean distance threshold (lower = stricter).
MATCH_THRESHOLD = 0.6
UNKNOWN_LABEL = "unknown"

# Detection loop tick, seconds.
DETECTION_INTERVAL = 0.15

DEFAULT_MODEL = "buffalo_l"
DEFAULT_DET_SIZE = 640
