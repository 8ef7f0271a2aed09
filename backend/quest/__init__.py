"""StarQuest domain module.

Provides:
- Workspace directory (workspaces, positions, members, leaderboard)
- Invitation lifecycle (direct invites, pending invitations, auto-join)
- Task backlog and fan-out into member quest lists
- Quest progress tracking (status changes, comments, stars)
- Daily, weekly and custom workspace reports, dashboard aggregates
"""
