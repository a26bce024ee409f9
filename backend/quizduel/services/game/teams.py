import math
from typing import Dict, List, Optional, Tuple

from quizduel.models import Team

# Must match the files served by the frontend under /avatars
AVATAR_POOL = [
    '/avatars/seekuh.png',
    '/avatars/waschbaer.png',
    '/avatars/roter_panda.png',
    '/avatars/igel.png',
    '/avatars/faultier.png',
    '/avatars/einhorn.png',
    '/avatars/eichhoernchen.png',
    '/avatars/capybara.png',
    '/avatars/wombat.png',
    '/avatars/koala.png',
    '/avatars/alpaka.png',
    '/avatars/pinguin.png',
    '/avatars/otter.png',
    '/avatars/giraffe.png',
    '/avatars/eisbaer.png',
    '/avatars/drache.png',
    '/avatars/katze.png',
    '/avatars/hund.png',
]


def _normalize_avatar(avatar) -> Optional[str]:
    if not isinstance(avatar, str) or not avatar.strip():
        return None
    avatar = avatar.strip()
    if not avatar.startswith('/'):
        avatar = '/' + avatar
    return avatar


def team_key(value) -> Optional[str]:
    """Coerce a client-supplied team id to the registry's string key."""
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    try:
        return str(value)
    except ValueError:
        return None


class TeamRegistry:
    """Team identity and token economy, in join order."""

    def __init__(self, starting_tokens: int = 24, starting_jokers: int = 1):
        self.starting_tokens = starting_tokens
        self.starting_jokers = starting_jokers
        self._teams: Dict[str, Team] = {}

    def __contains__(self, team_id) -> bool:
        return team_id in self._teams

    def __len__(self) -> int:
        return len(self._teams)

    def __iter__(self):
        return iter(list(self._teams.values()))

    def get(self, team_id) -> Optional[Team]:
        return self._teams.get(team_id)

    def join(self, team_id: str, name, avatar, now: int) -> Tuple[Team, bool]:
        """Create the team on first join, otherwise update name/avatar.

        Returns the team and whether it was newly created.
        """
        clean_name = name.strip()[:40] if isinstance(name, str) else ''
        avatar = _normalize_avatar(avatar)
        taken = {t.avatar for t in self._teams.values() if t.id != team_id}
        usable = avatar if avatar in AVATAR_POOL and avatar not in taken else None

        team = self._teams.get(team_id)
        if team is None:
            if usable is None:
                usable = next((a for a in AVATAR_POOL if a not in taken), AVATAR_POOL[0])
            team = Team(
                id=team_id,
                name=clean_name or f"Team {len(self._teams) + 1}",
                avatar=usable,
                tokens=self.starting_tokens,
                jokers=self.starting_jokers,
                joined_at=now,
            )
            self._teams[team_id] = team
            return team, True

        if clean_name:
            team.name = clean_name
        if usable:
            team.avatar = usable
        return team, False

    def update(self, team_id, patch: dict) -> Optional[Team]:
        team = self._teams.get(team_id)
        if team is None:
            return None
        for key in ('tokens', 'jokers'):
            value = patch.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            try:
                finite = math.isfinite(value)
            except OverflowError:
                finite = False
            if not finite:
                continue
            setattr(team, key, max(0, int(value)))
        if isinstance(patch.get('name'), str) and patch['name'].strip():
            team.name = patch['name'].strip()[:40]
        avatar = _normalize_avatar(patch.get('avatar'))
        if avatar:
            team.avatar = avatar
        return team

    def remove(self, team_id) -> Optional[Team]:
        return self._teams.pop(team_id, None)

    def clear(self) -> None:
        self._teams.clear()

    def credit(self, team_id, amount: int) -> None:
        team = self._teams.get(team_id)
        if team is not None:
            team.tokens += amount

    def debit(self, team_id, amount: int) -> None:
        team = self._teams.get(team_id)
        if team is not None:
            team.tokens = max(0, team.tokens - amount)

    def set_tokens(self, team_id, value: int) -> None:
        team = self._teams.get(team_id)
        if team is not None:
            team.tokens = max(0, int(value))

    def to_list(self) -> List[dict]:
        return [t.to_dict() for t in self._teams.values()]

    def load(self, rows) -> None:
        self._teams.clear()
        for row in rows or []:
            if not isinstance(row, dict) or not row.get('id'):
                continue
            try:
                team = Team.from_dict(row)
            except (TypeError, ValueError):
                continue
            self._teams[team.id] = team
