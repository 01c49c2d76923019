import re
from html import unescape

from bs4 import BeautifulSoup, NavigableString

_BLOCK_TAGS = ["p", "div", "tr", "section", "article", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre"]


def page_title(soup: BeautifulSoup) -> str:
    tag = soup.find("title")
    return tag.get_text(strip=True) if tag else ""


def soup_to_text(soup: BeautifulSoup) -> str:
    """Flatten parsed HTML into readable text, keeping link targets and list bullets."""
    for tag in soup.find_all(["script", "style", "head", "noscript", "svg"]):
        tag.decompose()

    for br in soup.find_all("br"):
        br.replace_with("\n")

    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert(0, NavigableString("\n"))
        tag.append(NavigableString("\n"))

    for a in soup.find_all("a", href=True):
        href = a["href"]
        label = a.get_text(strip=True)
        if href and href != label and not href.startswith(("#", "javascript:")):
            a.replace_with(f"{label} ({href})" if label else href)

    for li in soup.find_all("li"):
        li.insert(0, NavigableString("\n- "))

    for cell in soup.find_all(["td", "th"]):
        cell.append(NavigableString("\t"))

    body = soup.find("body")
    text = unescape((body or soup).get_text())

    text = re.sub(r"[ \t]*\t[ \t]*", "  ", text)
    text = re.sub(r" {3,}", "  ", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(html: str) -> str:
    return soup_to_text(BeautifulSoup(html, "lxml"))
