"""Predefined device profiles for viewport emulation."""

DESKTOP_CHROME_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)

PREDEFINED_DEVICES = {
    "Pixel 7": {
        "userAgent": "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Mobile Safari/537.36",
        "width": 412,
        "height": 915,
        "deviceScaleFactor": 2.625,
        "isMobile": True,
        "hasTouch": True,
        "isLandscape": False,
    },
    "iPhone 14": {
        "userAgent": "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1",
        "width": 390,
        "height": 844,
        "deviceScaleFactor": 3,
        "isMobile": True,
        "hasTouch": True,
        "isLandscape": False,
    },
    "iPad Pro": {
        "userAgent": "Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1",
        "width": 1024,
        "height": 1366,
        "deviceScaleFactor": 2,
        "isMobile": True,
        "hasTouch": True,
        "isLandscape": False,
    },
    "Desktop (1280x800)": {
        "width": 1280,
        "height": 800,
        "deviceScaleFactor": 1,
        "isMobile": False,
        "hasTouch": False,
        "isLandscape": True,
    },
    "Desktop (1920x1080)": {
        "userAgent": DESKTOP_CHROME_UA,
        "width": 1920,
        "height": 1080,
        "deviceScaleFactor": 1,
        "isMobile": False,
        "hasTouch": False,
        "isLandscape": True,
    },
    "Desktop (2560x1440)": {
        "userAgent": DESKTOP_CHROME_UA,
        "width": 2560,
        "height": 1440,
        "deviceScaleFactor": 1,
        "isMobile": False,
        "hasTouch": False,
        "isLandscape": True,
    },
}
