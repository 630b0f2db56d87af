#!/usr/bin/env python3
"""
HTML rendering of directory listings.

The renderer is a pure function of the listing plus a classifier that
answers "is named child X of directory D a directory?". Directory entries
link relatively to ``{name}/`` so browsing stays on the listing route; file
entries link absolutely to ``/files/{current}{name}`` so PHP execution and
static serving can intercept them.
"""

import html
import os
from typing import Callable
from urllib.parse import quote

from content_resolver import DirectoryListing, FILES_PREFIX


DirectoryClassifier = Callable[[str], bool]


def directory_classifier(directory_path: str) -> DirectoryClassifier:
    """Build a classifier that re-stats children of directory_path"""
    def is_directory(name: str) -> bool:
        return os.path.isdir(os.path.join(directory_path, name))
    return is_directory


def entry_href(listing: DirectoryListing, name: str, is_directory: bool) -> str:
    """Link target for a listing entry"""
    if is_directory:
        return quote(name) + "/"
    return FILES_PREFIX + quote(listing.current_relative_path + name)


# ============================================================================
# HTML Template
# ============================================================================

FOLDER_ICON = """<svg class="icon" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round">
                        <path d="M3 6h18a2 2 0 0 1 2 2v12a2 2 0 0 1-2 2H3a2 2 0 0 1-2-2V8a2 2 0 0 1 2-2z"></path>
                        <path d="M3 6l3-3h6l3 3"></path>
                    </svg>"""

FILE_ICON = """<svg class="icon" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round">
                        <path d="M6 2h8l6 6v12a2 2 0 0 1-2 2H6a2 2 0 0 1-2-2V4a2 2 0 0 1 2-2z"></path>
                        <path d="M14 2v6h6"></path>
                    </svg>"""

BACK_LINK = """<a href="../" class="back-link">
            <svg class="icon" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round">
                <polyline points="15 18 9 12 15 6"></polyline>
            </svg>
            Directory: /{path}
        </a>"""

DIRECTORY_ENTRY = """<li class="entry directory">
                <a href="{href}">
                    {icon}
                    {name}
                </a>
            </li>"""

FILE_ENTRY = """<li class="entry file">
                <a href="{href}" target="_blank">
                    {icon}
                    {name}
                </a>
            </li>"""

LISTING_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Escudeiro - /{title}</title>
    <style>
        :root {{
            --bg-color: #f8f9fa;
            --container-bg: #fff;
            --text-color: #000;
            --border-color: #000;
            --hover-bg: #f1f1f1;
        }}

        .dark-mode {{
            --bg-color: #121212;
            --container-bg: #1e1e1e;
            --text-color: #ffffff;
            --border-color: #ffffff;
            --hover-bg: #2c2c2c;
        }}

        * {{
            margin: 0;
            padding: 0;
            box-sizing: border-box;
            font-family: Arial, sans-serif;
        }}

        body {{
            background: var(--bg-color);
            color: var(--text-color);
            display: flex;
            flex-direction: column;
            align-items: center;
            min-height: 100vh;
            padding: 40px;
            transition: background 0.3s, color 0.3s;
        }}

        .container {{
            width: 100%;
            max-width: 900px;
            background: var(--container-bg);
            border: 2px solid var(--border-color);
            padding: 20px;
            border-radius: 8px;
            box-shadow: 0px 4px 8px rgba(0, 0, 0, 0.1);
        }}

        h2 {{
            font-size: 24px;
            margin-bottom: 20px;
        }}

        .back-link {{
            display: flex;
            align-items: center;
            font-size: 18px;
            font-weight: bold;
            text-decoration: none;
            color: var(--text-color);
            margin-bottom: 15px;
        }}

        ul {{
            list-style: none;
            width: 100%;
        }}

        li {{
            display: flex;
            align-items: center;
            padding: 12px;
            border-top: 1px solid var(--border-color);
        }}

        li:hover {{
            background: var(--hover-bg);
        }}

        li a {{
            text-decoration: none;
            color: var(--text-color);
            font-size: 18px;
            display: flex;
            align-items: center;
            width: 100%;
        }}

        .icon {{
            width: 24px;
            height: 24px;
            margin-right: 10px;
        }}

        .empty {{
            color: var(--text-color);
            opacity: 0.6;
            padding: 12px;
        }}

        .theme-toggle {{
            position: fixed;
            top: 10px;
            right: 10px;
            background: none;
            border: 2px solid var(--text-color);
            color: var(--text-color);
            padding: 5px 12px;
            font-size: 14px;
            cursor: pointer;
            border-radius: 4px;
        }}
    </style>
</head>
<body>
    <button class="theme-toggle" onclick="toggleTheme()">Dark Mode</button>

    <div class="container">
        <h2>Escudeiro</h2>
        {back_link}
        <ul id="entries">
            {entries}
        </ul>
    </div>

    <script>
        document.addEventListener("DOMContentLoaded", function() {{
            if (localStorage.getItem("theme") === "dark") {{
                document.body.classList.add("dark-mode");
                document.querySelector('.theme-toggle').innerText = "Light Mode";
            }}
        }});

        function toggleTheme() {{
            document.body.classList.toggle('dark-mode');
            const button = document.querySelector('.theme-toggle');
            const dark = document.body.classList.contains('dark-mode');
            button.innerText = dark ? "Light Mode" : "Dark Mode";
            localStorage.setItem("theme", dark ? "dark" : "light");
        }}
    </script>
</body>
</html>
"""


def render_listing(listing: DirectoryListing, is_directory: DirectoryClassifier) -> str:
    """
    Render a directory listing as an HTML document.

    Args:
        listing: Entries and the current relative browse path
        is_directory: Classifier consulted for every entry name

    Returns:
        HTML document as a string
    """
    items = []
    for name in listing.names:
        directory = is_directory(name)
        template = DIRECTORY_ENTRY if directory else FILE_ENTRY
        items.append(template.format(
            href=html.escape(entry_href(listing, name, directory), quote=True),
            icon=FOLDER_ICON if directory else FILE_ICON,
            name=html.escape(name)
        ))

    if not items:
        items.append('<li class="empty">Empty directory</li>')

    current = html.escape(listing.current_relative_path)
    back_link = BACK_LINK.format(path=current) if listing.current_relative_path else ""

    return LISTING_TEMPLATE.format(
        title=current,
        back_link=back_link,
        entries="\n            ".join(items)
    )
