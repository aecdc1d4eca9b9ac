"""
GridReveal application package.

Layered like this:

  app/repositories/  pure I/O over the JSON catalog files and the media store.
  app/services/      business logic (validation, the upload pipeline, games,
                     live play sessions and export).

``GridReveal`` (in ``gridreveal.py``) is the integration point: it creates the
repository and service instances and exposes them as public attributes
(e.g. ``reveal_app.images``).  Route handlers in ``gridreveal_gui.py`` call the
services directly, keeping the HTTP layer separate from the domain.

The scramble engine (``scramble.py``) and the reveal engine (``reveal.py``)
are plain modules with no I/O; the services feed them bytes and rounds.
"""
