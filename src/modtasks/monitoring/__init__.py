"""Message-side monitoring of task targets."""
