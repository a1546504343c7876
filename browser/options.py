"""Engine-specific launch presets.

Arguments and preferences applied by the session factories before the
per-deployment settings (headless, user agent, download directory).
"""

CHROME_ARGS: tuple[str, ...] = (
    "--disable-web-security",
    "--disable-site-isolation-trials",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--window-size=1920,1080",
    "--disable-extensions",
    "--disable-popup-blocking",
    "--disable-notifications",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-ipc-flooding-protection",
    "--disable-default-apps",
    "--disable-translate",
    "--disable-sync",
    "--disable-logging",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-client-side-phishing-detection",
    "--disable-hang-monitor",
    "--disable-prompt-on-repost",
    "--disable-background-networking",
)

CHROME_PREFS: dict[str, object] = {
    "download.prompt_for_download": False,
    "directory_upgrade": True,
    "profile.default_content_settings.popups": 0,
    "profile.default_content_setting_values.notifications": 2,
    "profile.default_content_setting_values.geolocation": 2,
    "profile.default_content_setting_values.media_stream_camera": 2,
    "profile.default_content_setting_values.media_stream_mic": 2,
    "profile.default_content_setting_values.plugins": 2,
}

FIREFOX_ARGS: tuple[str, ...] = (
    "--width=1920",
    "--height=1080",
)

FIREFOX_PREFS: dict[str, object] = {
    "browser.download.folderList": 2,  # 2 = custom directory
    "browser.download.useDownloadDir": True,
    "browser.download.manager.showWhenStarting": False,
    "browser.helperApps.neverAsk.saveToDisk": (
        "application/pdf,application/octet-stream,image/jpeg,image/png,image/gif,image/webp"
    ),
    "dom.popup_maximum": 0,
    "dom.webnotifications.enabled": False,
    "dom.push.enabled": False,
    "geo.enabled": False,
    "media.navigator.permission.disabled": True,
    "media.autoplay.default": 5,  # block all
    "privacy.trackingprotection.enabled": False,
    "privacy.trackingprotection.socialtracking.enabled": False,
    "browser.sessionstore.resume_from_crash": False,
    "dom.disable_beforeunload": True,
    "browser.tabs.warnOnClose": False,
    "dom.webdriver.enabled": False,
}

FIREFOX_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:120.0) Gecko/20100101 Firefox/120.0"
)

PLAYWRIGHT_CHROMIUM_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--disable-web-security",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--window-size=1920,1080",
)
