"""PR notification collaborator."""

from envstack.notify.github import GitHubNotifier, NoOpNotifier, Notifier, ThreadKey

__all__ = ["GitHubNotifier", "NoOpNotifier", "Notifier", "ThreadKey"]
