"""
Signals emitted by the reconciler for external subscribers.

Receivers get the updated object as ``sender``::

    @structure_updated.connect
    def on_structure(structure, **extra):
        ...
"""

from blinker import Namespace

_signals = Namespace()

upstream_record_updated = _signals.signal("upstream-record-updated")
structure_updated = _signals.signal("structure-updated")
volunteer_updated = _signals.signal("volunteer-updated")
