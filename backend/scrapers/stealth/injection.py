"""
Init scripts and headers that hide automation markers.

Scripts are registered with BrowserContext.add_init_script() so they run
before any page script.
"""

from typing import Dict, Optional
import json
import re

from .fingerprint import Fingerprint, FINGERPRINTS


# Automation markers only; identity values (platform, vendor, languages,
# memory, cores, screen, WebGL) come from fingerprint_script
STEALTH_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => false,
        configurable: true,
    });

    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => {
        if (parameters.name === 'notifications') {
            return Promise.resolve({ state: 'prompt', onchange: null });
        }
        return originalQuery(parameters);
    };

    Object.defineProperty(navigator, 'plugins', {
        get: () => [
            {
                0: { type: 'application/x-google-chrome-pdf', suffixes: 'pdf', description: 'Portable Document Format' },
                description: 'Portable Document Format',
                filename: 'internal-pdf-viewer',
                length: 1,
                name: 'Chrome PDF Plugin',
            },
            {
                0: { type: 'application/pdf', suffixes: 'pdf', description: 'Portable Document Format' },
                description: 'Portable Document Format',
                filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai',
                length: 1,
                name: 'Chrome PDF Viewer',
            },
        ],
        configurable: true,
    });

    // Canvas noise: flip the low bit of one pixel
    const originalToDataURL = HTMLCanvasElement.prototype.toDataURL;
    HTMLCanvasElement.prototype.toDataURL = function (type) {
        if (type === 'image/png' && this.width > 0 && this.height > 0) {
            const context = this.getContext('2d');
            if (context) {
                const imageData = context.getImageData(0, 0, 1, 1);
                imageData.data[0] = imageData.data[0] ^ Math.floor(Math.random() * 2);
                context.putImageData(imageData, 0, 0);
            }
        }
        return originalToDataURL.apply(this, arguments);
    };

    Object.defineProperty(navigator, 'getBattery', {
        value: () => Promise.resolve({
            charging: true,
            chargingTime: 0,
            dischargingTime: Infinity,
            level: 1,
            addEventListener: () => {},
            removeEventListener: () => {},
            dispatchEvent: () => true,
        }),
        configurable: true,
    });

    delete window.__playwright;
    delete window.__pw_manual;
    delete window.__PW_inspect;

    Object.defineProperty(navigator, 'connection', {
        get: () => ({ effectiveType: '4g', rtt: 50, downlink: 10, saveData: false }),
        configurable: true,
    });
"""

# platform -> (UNMASKED_VENDOR_WEBGL, UNMASKED_RENDERER_WEBGL)
WEBGL_BY_PLATFORM = {
    'MacIntel': ('Intel Inc.', 'Intel Iris OpenGL Engine'),
    'Win32': (
        'Google Inc. (Intel)',
        'ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)',
    ),
}

# sec-ch-ua-platform values
CLIENT_HINT_PLATFORMS = {
    'MacIntel': 'macOS',
    'Win32': 'Windows',
}

CHROME_VERSION = re.compile(r'Chrome/(\d+)')


def chrome_major_version(fp: Fingerprint) -> Optional[int]:
    """Chrome major version from the bundle's user agent, None for non-Chromium browsers."""
    match = CHROME_VERSION.search(fp.user_agent)
    return int(match.group(1)) if match else None


def fingerprint_script(fp: Fingerprint) -> str:
    """
    Init script overriding navigator, screen and WebGL values with a fingerprint's.

    Every property is defined configurable so the script can be combined
    with STEALTH_SCRIPT in either order. window.chrome only exists for
    Chrome bundles.
    """
    webgl_vendor, webgl_renderer = WEBGL_BY_PLATFORM.get(fp.platform, WEBGL_BY_PLATFORM['MacIntel'])
    chrome_object = ""
    if chrome_major_version(fp) is not None:
        chrome_object = """
    window.chrome = { runtime: {}, loadTimes: function () {}, csi: function () {}, app: {} };"""

    overrides = [
        ('navigator', 'platform', json.dumps(fp.platform)),
        ('navigator', 'vendor', json.dumps(fp.vendor)),
        ('navigator', 'hardwareConcurrency', fp.hardware_concurrency),
        ('navigator', 'deviceMemory', fp.device_memory),
        ('navigator', 'languages', json.dumps(fp.languages)),
        ('screen', 'width', fp.screen_width),
        ('screen', 'height', fp.screen_height),
        ('screen', 'colorDepth', fp.color_depth),
    ]
    lines = [
        f"    Object.defineProperty({target}, '{name}', {{ get: () => {value}, configurable: true }});"
        for target, name, value in overrides
    ]
    return "\n" + "\n".join(lines) + f"""
    const getParameter = WebGLRenderingContext.prototype.getParameter;
    WebGLRenderingContext.prototype.getParameter = function (parameter) {{
        if (parameter === 37445) return {json.dumps(webgl_vendor)};
        if (parameter === 37446) return {json.dumps(webgl_renderer)};
        return getParameter.apply(this, arguments);
    }};{chrome_object}
"""


def get_stealth_headers(country: str = 'CA', fp: Optional[Fingerprint] = None) -> Dict[str, str]:
    """
    Navigation headers matching the bundle's browser, Accept-Language chosen by proxy country.

    Client hints (sec-ch-ua*) are only sent for Chrome bundles, with the
    bundle's major version and platform. Without a bundle the first one is used.
    """
    fp = fp or FINGERPRINTS[0]
    language = 'en-CA,en-US;q=0.9,en;q=0.8,fr;q=0.7' if country == 'CA' else 'en-US,en;q=0.9'
    headers = {
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8',
        'Accept-Language': language,
        'Accept-Encoding': 'gzip, deflate, br',
        'DNT': '1',
        'Connection': 'keep-alive',
        'Upgrade-Insecure-Requests': '1',
        'Sec-Fetch-Dest': 'document',
        'Sec-Fetch-Mode': 'navigate',
        'Sec-Fetch-Site': 'none',
        'Sec-Fetch-User': '?1',
        'Cache-Control': 'max-age=0',
    }
    version = chrome_major_version(fp)
    if version is not None:
        platform = CLIENT_HINT_PLATFORMS.get(fp.platform, 'macOS')
        headers['sec-ch-ua'] = f'"Google Chrome";v="{version}", "Chromium";v="{version}", "Not_A Brand";v="24"'
        headers['sec-ch-ua-mobile'] = '?0'
        headers['sec-ch-ua-platform'] = f'"{platform}"'
    return headers
