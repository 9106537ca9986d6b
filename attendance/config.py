# Font candidates for overlay labels (macOS/Windows/Linux). Enrolled names often
# carry accents, so fonts with wide unicode coverage come first.
FONT_LIST = [
    # macOS
    "/System/Library/Fonts/Supplemental/Arial Unicode.ttf",
    "/Library/Fonts/Arial Unicode.ttf",
    "/System/Library/Fonts/Helvetica.ttc",
    # Windows
    "C:\\Windows\\Fonts\\arialuni.ttf",
    "C:\\Windows\\Fonts\\segoeui.ttf",
    "C:\\Windows\\Fonts\\arial.ttf",
    # Linux
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/noto/NotoSans-Regular.ttf",
    "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc",
    "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
]

# Storage key of the single serialized enrollment collection.
ENROLLMENT_KEY = "attend_enroll_v1"
DEFAULT_STORE_PATH = "data/enrollments.pkl"

# Live session defaults (640x480 reference capture).
DEFAULT_CAMERA_SIZE = (640, 480)
DEFAULT_EXTRACT_TIMEOUT_SECONDS = 2.0
ENROLL_EXTRACT_TIMEOUT_SECONDS = 4.5

# Label reported for faces that match no enrollment; reserved, never enrollable.
UNKNOWN_LABEL = "unknown"
