import dataclasses


class Event:
    def __init_subclass__(cls, **kwargs):
        """Make subclasses available in the class namespace.
        Allows to use patterns like the following without having
        to import all the event classes.

        ```
        match type(event):
            case event.Added:
                pass
            case event.Modified:
                pass
        ```
        """
        setattr(Event, cls.__name__, cls)

    @property
    def objects(self):
        """All (non None) objects carried by this event."""
        return [self.obj]

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.obj}>'


@dataclasses.dataclass(repr=False)
class Added(Event):
    obj: object


@dataclasses.dataclass(repr=False)
class Modified(Event):
    old: object
    new: object

    @property
    def obj(self):
        return self.new

    @property
    def objects(self):
        return [o for o in (self.old, self.new) if o is not None]

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.old} {self.new}>'


@dataclasses.dataclass(repr=False)
class Deleted(Event):
    obj: object


@dataclasses.dataclass(repr=False)
class Resynced(Event):
    """Synthetic event emitted for every key after a relist."""

    old: object
    new: object

    @property
    def obj(self):
        return self.new

    @property
    def objects(self):
        return [o for o in (self.old, self.new) if o is not None]

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.old} {self.new}>'
