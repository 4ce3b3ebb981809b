"""Drive a draft pull request through automated review iterations."""
