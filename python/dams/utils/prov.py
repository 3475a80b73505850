"""
module defining the class that identifies who is making a change.

Every operation on a FileSet or Work is carried out on behalf of an :py:class:`Agent`: a software 
*vehicle* (the web front end, a queued job, a command-line tool) driven by an *actor*, an 
authenticated identity that is either a person or a functional account.  Besides identifying who 
did what, an ``Agent`` carries the permission groups that authorization decisions consult.  An 
Agent can be serialized into a :py:class:`~dams.store.base.ContentDescriptor` so that a deferred
task acts on behalf of the same user.
"""
import json
from collections import OrderedDict
from collections.abc import Mapping
from typing import Iterable, Tuple
from copy import deepcopy

PUBLIC_AGENT_CLASS = "public"
ADMIN_AGENT_CLASS = "admin"
ANONYMOUS_USER = "anonymous"

class Agent(object):
    """
    a description of who is requesting a change.  

    The :py:attr:`agent_class` is a group assigned to the agent based on how it was authenticated; 
    it always appears as the first of the agent's :py:attr:`groups`.  Any other keyword arguments 
    given at construction (e.g. ``email``) are kept as actor metadata (see :py:meth:`get_prop`).

    :param str   vehicle:  a name for the software component the request comes through
    :param str actortype:  USER for people, AUTO for functional identities, or UNKN
    :param str   actorid:  the user key of the actor (default: ANONYMOUS)
    :param str   agclass:  the agent classification (default: PUBLIC)
    :param groups:         the names of other permission groups the actor belongs to
    """
    USER: str = "user"
    AUTO: str = "auto"
    UNKN: str = ""
    PUBLIC: str = PUBLIC_AGENT_CLASS
    ADMIN: str = ADMIN_AGENT_CLASS
    ANONYMOUS: str = ANONYMOUS_USER
    _actor_types = (USER, AUTO, UNKN)

    def __init__(self, vehicle: str, actortype: str, actorid: str = None, agclass: str = None,
                 groups: Iterable[str] = None, **kwargs):
        if actortype not in self._actor_types:
            raise ValueError("Agent: actortype not one of "+str(self._actor_types))
        self._vehicle = vehicle
        self._actor_type = actortype
        self._actor = actorid or self.ANONYMOUS
        self._agclass = agclass or self.PUBLIC
        self._groups = set(g for g in (groups or []) if g != self._agclass)
        self._md = OrderedDict((k, v) for k, v in kwargs.items() if v is not None)

    @property
    def actor(self) -> str:
        """
        the user key of the actor: the identifier recorded as a depositor or creator and granted 
        permissions on resources.
        """
        return self._actor

    @property
    def actor_type(self) -> str:
        return self._actor_type

    @property
    def vehicle(self) -> str:
        return self._vehicle

    @property
    def agent_class(self) -> str:
        return self._agclass

    @property
    def id(self) -> str:
        """
        an identifier for this agent, of the form *vehicle*/*actor*
        """
        return "%s/%s" % (self.vehicle, self.actor)

    @property
    def is_anonymous(self) -> bool:
        return self._actor == self.ANONYMOUS

    @property
    def groups(self) -> Tuple[str]:
        """
        the names of the permission groups the agent belongs to, starting with its agent class
        """
        return tuple([self._agclass] + sorted(self._groups))

    def attach_group(self, group: str):
        self._groups.add(group)

    def detach_group(self, group: str):
        self._groups.discard(group)

    def is_in_group(self, group: str) -> bool:
        return group in self.groups

    def get_prop(self, propname: str, defval=None):
        """
        return the actor metadata property with the given name (e.g. "email")
        """
        return self._md.get(propname, defval)

    def to_dict(self, withmd=False) -> Mapping:
        """
        return a JSON-encodable dictionary describing this agent.  Actor metadata is included only
        if ``withmd`` is True.
        """
        out = OrderedDict([
            ("vehicle", self.vehicle),
            ("actor", self.actor),
            ("type", self.actor_type),
            ("class", self.agent_class)
        ])
        if self._groups:
            out['groups'] = sorted(self._groups)
        if withmd and self._md:
            out['actor_md'] = deepcopy(self._md)
        return out

    def serialize(self, indent=None, withmd=False) -> str:
        return json.dumps(self.to_dict(withmd), indent=indent)

    @classmethod
    def from_dict(cls, data: Mapping) -> "Agent":
        """
        recreate an Agent from a dictionary like that produced by :py:meth:`to_dict`
        :raise ValueError:  if the data is missing required properties
        """
        missing = [p for p in ("vehicle", "type") if p not in data]
        if missing:
            raise ValueError("Agent.from_dict(): data is missing required properties: "+str(missing))
        return cls(data['vehicle'], data['type'], data.get('actor'), data.get('class'),
                   data.get('groups'), **data.get('actor_md', {}))

    def __eq__(self, other):
        return isinstance(other, Agent) and self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def __str__(self):
        return self.id

    def __repr__(self):
        return "Agent(%s)" % self.id
