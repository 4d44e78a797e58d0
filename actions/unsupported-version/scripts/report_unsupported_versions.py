#!/usr/bin/env python3
"""
Unsupported Version Reporter
Keeps a single open 'unsupported-version' issue up to date:
- Creates the issue when none is open
- Otherwise comments only the versions not yet mentioned in the thread
"""
import os
import re
import sys
import json
import requests

ISSUE_TITLE = "Unsupported version delimiters"
ISSUE_LABEL = "unsupported-version"
VERSIONS_ENV = "VERSIONS"
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")

# The first word of the info string is the language, so ```json title="x" counts as json
FENCE_OPEN = re.compile(r'^ {0,3}(`{3,}|~{3,})[ \t]*([^\s`]*)[^`]*$')


def reject_constant(name):
    """NaN and Infinity are not JSON, and NaN never equals itself"""
    raise ValueError(f"{name} is not valid JSON")


class VersionInputError(ValueError):
    """VERSIONS is not a JSON object"""


class VersionHistoryError(ValueError):
    """A json block already posted on the issue cannot be read back"""


# ============================================
# VERSION SETS
# ============================================

def load_versions(content):
    """Parse the VERSIONS payload into an ordered dict"""
    try:
        versions = json.loads(content, parse_constant=reject_constant)
    except (TypeError, ValueError) as e:
        raise VersionInputError(f"{VERSIONS_ENV} is not valid JSON: {e}") from e

    if not isinstance(versions, dict):
        raise VersionInputError(
            f"{VERSIONS_ENV} must be a JSON object, got {type(versions).__name__}"
        )

    return versions


def build_body(content):
    """Wrap a JSON payload in a fenced json block"""
    return '\n'.join(['```json', content, '```'])


def json_equal(left, right):
    """
    Structural equality over JSON values.
    Unlike ==, booleans never equal numbers (true != 1).
    """
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right

    if isinstance(left, dict) and isinstance(right, dict):
        if left.keys() != right.keys():
            return False
        return all(json_equal(value, right[key]) for key, value in left.items())

    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            return False
        return all(json_equal(a, b) for a, b in zip(left, right))

    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right

    if type(left) is not type(right):
        return False

    return left == right


def diff_versions(versions, mentioned):
    """Versions that are new or changed compared to what was already mentioned"""
    return {
        key: value
        for key, value in versions.items()
        if key not in mentioned or not json_equal(value, mentioned[key])
    }


# ============================================
# MARKDOWN PARSING
# ============================================

def extract_json_blocks(text):
    """Return the contents of every ```json fenced block in a markdown text"""
    if not text:
        return []

    blocks = []
    fence = None
    lang = None
    lines = []

    for line in text.replace('\r\n', '\n').split('\n'):
        if fence is None:
            match = FENCE_OPEN.match(line)
            if match:
                fence = match.group(1)
                lang = match.group(2)
                lines = []
            continue

        stripped = line.strip()
        if (len(line) - len(line.lstrip(' ')) <= 3 and stripped
                and set(stripped) == {fence[0]} and len(stripped) >= len(fence)):
            if lang == 'json':
                blocks.append('\n'.join(lines))
            fence = None
            continue

        lines.append(line)

    # Unclosed fence runs to the end of the document
    if fence is not None and lang == 'json':
        blocks.append('\n'.join(lines))

    return blocks


def parse_mentioned_versions(issue_number, bodies):
    """
    Merge every json block of the thread into one version set.
    Bodies are in chronological order, so later comments win on key collision.
    """
    mentioned = {}

    for index, body in enumerate(bodies):
        source = "body" if index == 0 else f"comment {index}"

        for block in extract_json_blocks(body):
            try:
                fragment = json.loads(block, parse_constant=reject_constant)
            except ValueError as e:
                raise VersionHistoryError(
                    f"Issue #{issue_number} {source} has an invalid json block: {e}"
                ) from e

            if not isinstance(fragment, dict):
                raise VersionHistoryError(
                    f"Issue #{issue_number} {source} has a json block that is not an object"
                )

            mentioned.update(fragment)

    return mentioned


# ============================================
# GITHUB API
# ============================================

def github_headers(token):
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github.v3+json"
    }


def get_paginated(url, token, params):
    """GET every page of a list endpoint, following Link rel=next"""
    results = []

    while url:
        response = requests.get(url, headers=github_headers(token), params=params)
        response.raise_for_status()
        results.extend(response.json())

        url = response.links.get('next', {}).get('url')
        # The next link already carries the query string
        params = None

    return results


def get_open_version_issues(repo, token):
    """Open issues carrying the unsupported-version label, oldest first"""
    url = f"{GITHUB_API_URL}/repos/{repo}/issues"
    params = {
        "state": "open",
        "labels": ISSUE_LABEL,
        "sort": "created",
        "direction": "asc",
        "per_page": 100
    }

    issues = [
        issue for issue in get_paginated(url, token, params)
        if 'pull_request' not in issue
    ]
    issues.sort(key=lambda x: (x.get('created_at') or '', x['number']))
    return issues


def get_issue_comments(repo, token, issue_number):
    """Full comment history of an issue, in chronological order"""
    url = f"{GITHUB_API_URL}/repos/{repo}/issues/{issue_number}/comments"
    return get_paginated(url, token, {"per_page": 100})


def create_issue(repo, token, body):
    url = f"{GITHUB_API_URL}/repos/{repo}/issues"
    payload = {
        'title': ISSUE_TITLE,
        'body': body,
        'labels': [ISSUE_LABEL]
    }

    response = requests.post(url, headers=github_headers(token), json=payload)
    response.raise_for_status()
    return response.json()


def create_comment(repo, token, issue_number, body):
    url = f"{GITHUB_API_URL}/repos/{repo}/issues/{issue_number}/comments"

    response = requests.post(url, headers=github_headers(token), json={"body": body})
    response.raise_for_status()
    return response.json()


# ============================================
# REPORTING
# ============================================

def report_versions(repo, token, content, versions, dry_run=False):
    """
    Create the issue or comment the new versions.
    Returns the html_url of what was created, or None when nothing was posted.
    """
    issues = get_open_version_issues(repo, token)
    print(f"🔍 Found {len(issues)} open '{ISSUE_LABEL}' issue(s)")

    if not issues:
        body = build_body(content)
        if dry_run:
            print(f"   [DRY RUN] Would create issue '{ISSUE_TITLE}':\n{body}")
            return None

        issue = create_issue(repo, token, body)
        print(f"✅ Created issue {issue['html_url']}")
        return issue['html_url']

    latest_issue = issues[-1]
    issue_number = latest_issue['number']
    print(f"📋 Using issue #{issue_number}")

    comments = get_issue_comments(repo, token, issue_number)
    bodies = [latest_issue.get('body')] + [c.get('body') for c in comments]
    mentioned = parse_mentioned_versions(issue_number, bodies)
    print(f"   {len(mentioned)} version(s) already mentioned in {len(bodies)} post(s)")

    new_versions = diff_versions(versions, mentioned)
    if not new_versions:
        print("✅ No new unsupported versions to report")
        return None

    print(f"   {len(new_versions)} new or changed version(s): {', '.join(new_versions)}")
    body = build_body(json.dumps(new_versions, indent=2))
    if dry_run:
        print(f"   [DRY RUN] Would comment on #{issue_number}:\n{body}")
        return None

    comment = create_comment(repo, token, issue_number, body)
    print(f"✅ Created comment {comment['html_url']}")
    return comment['html_url']


def write_output(name, value):
    """Expose a step output when running inside GitHub Actions"""
    path = os.getenv("GITHUB_OUTPUT")
    if not path:
        return

    with open(path, 'a', encoding='utf-8') as f:
        f.write(f"{name}={value}\n")


def main():
    dry_run = "--dry-run" in sys.argv or "-n" in sys.argv

    content = os.getenv(VERSIONS_ENV)
    if content is None:
        print(f"❌ Missing {VERSIONS_ENV}")
        sys.exit(1)

    versions = load_versions(content)
    if not versions:
        print("✅ No unsupported versions")
        return

    repo = os.getenv("GITHUB_REPOSITORY")
    token = os.getenv("GITHUB_TOKEN")

    if not repo or not token:
        print("❌ Missing GITHUB_REPOSITORY or GITHUB_TOKEN")
        sys.exit(1)

    if dry_run:
        print("🔍 DRY RUN MODE - No changes will be made")

    url = report_versions(repo, token, content, versions, dry_run=dry_run)
    if url:
        write_output("url", url)


if __name__ == "__main__":
    main()
