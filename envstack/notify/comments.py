"""Markdown bodies for environment lifecycle PR comments."""

from datetime import datetime, timezone
from typing import Optional

from envstack.notify.github import ThreadKey


NEW_ENVIRONMENT_MARKER = "new-environment"
APP_PORT = 8080


def new_environment_key(pr_number: int) -> ThreadKey:
    # Refresh and deploy comments share one thread so a refresh replaces the old URL
    return ThreadKey(pr_number, NEW_ENVIRONMENT_MARKER)


def cleanup_key(pr_number: int, branch: str) -> ThreadKey:
    return ThreadKey(pr_number, f"cleanup-complete-{branch}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def environment_refresh(branch: str) -> str:
    return f"""<!-- {NEW_ENVIRONMENT_MARKER} -->
🔄 **Environment Refreshing**

The environment for branch `{branch}` is being refreshed with the latest changes.

**Refresh Details:**
- 🌿 **Branch:** `{branch}`
- ⏰ **Started:** {_now()}
- 🔄 **Action:** Destroying existing environment and deploying fresh resources

New deployment info will be posted once ready."""


def new_environment(version: str, address: Optional[str], error: Optional[str]) -> str:
    """Deployment result comment: success with the address, failure, or unknown."""
    if error:
        return f"""<!-- {NEW_ENVIRONMENT_MARKER} -->
❌ **Environment Deployment Failed**

The deployment for version `{version}` encountered an error:

```
{error}
```

- 🏷️ **Version:** `{version}`
- ⏰ **Attempted:** {_now()}

Please check the workflow logs for more details."""

    if address:
        url = f"http://{address}:{APP_PORT}"
        return f"""<!-- {NEW_ENVIRONMENT_MARKER} -->
🚀 **New Environment Deployed**

✅ The application has been deployed and will be ready for testing in a few minutes.

- 🌐 **Application URL:** [{url}]({url})
- 🔧 **API Health Check:** [{url}/api/health]({url}/api/health)
- 🏷️ **Version:** `{version}`
- ⏰ **Deployed:** {_now()}

```bash
curl {url}/api/health
curl {url}/api/products
```

> 💡 This environment is cleaned up automatically when the PR is closed."""

    return f"""<!-- {NEW_ENVIRONMENT_MARKER} -->
⚠️ **Environment Deployment Status Unknown**

The deployment for version `{version}` completed, but no endpoint information was found.

- 🏷️ **Version:** `{version}`
- ⏰ **Attempted:** {_now()}

Please check the workflow logs for more details."""


def cleanup_complete(branch: str, error: Optional[str]) -> str:
    marker = cleanup_key(0, branch).marker
    if error:
        return f"""<!-- {marker} -->
⚠️ **Environment Cleanup Issues**

The cleanup process for branch `{branch}` encountered some issues:

```
{error}
```

- 🌿 **Branch:** `{branch}`
- ⏰ **Attempted:** {_now()}

Some resources may still be running; manual cleanup may be required."""

    return f"""<!-- {marker} -->
🧹 **Environment Cleanup Complete**

✅ The environment for branch `{branch}` has been cleaned up.

- 🌿 **Branch:** `{branch}`
- ⏰ **Completed:** {_now()}
- 🗑️ **Action:** All associated cloud resources have been terminated"""
