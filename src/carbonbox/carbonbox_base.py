"""carbonbox: A carbon cycle box model integration engine.

Copyright (C), 2020 Ulrich G. Wortmann

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

from __future__ import annotations

import typing as tp

from .initialize_unit_registry import Q_


class KeywordError(Exception):
    """Exception raised for unknown keyword arguments.

    Parameters
    ----------
    message : str
        Explanation of the error

    Examples
    --------
    >>> raise KeywordError("'eps' is not a valid keyword")
    """

    def __init__(self, message):
        message = f"\n\n{message}\n"
        super().__init__(message)


class MissingKeywordError(Exception):
    """Exception raised when a required keyword argument is missing.

    Parameters
    ----------
    message : str
        Explanation of the error

    Examples
    --------
    >>> raise MissingKeywordError("'name' is a mandatory keyword")
    """

    def __init__(self, message):
        message = f"\n\n{message}\n"
        super().__init__(message)


class InputError(Exception):
    """Exception raised for values of the wrong type or range.

    Parameters
    ----------
    message : str
        Explanation of the error

    Examples
    --------
    >>> raise InputError("'dt' must be positive")
    """

    def __init__(self, message):
        message = f"\n\n{message}\n"
        super().__init__(message)


class InputParsing:
    """Routines to parse and validate keyword arguments.

    Derived classes declare the allowed keyword arguments, their default
    values and the allowed types in the following format:

    defaults = {"key": [value, (allowed instances)]}

    and list the mandatory keywords in ``self.lrk``. Calling
    ``__initialize_keyword_variables__(kwargs)`` then registers every
    keyword as an instance attribute and overwrites the defaults with the
    values provided by the caller.

    Notes
    -----
    This class is not meant to be instantiated directly.
    """

    def __init__(self):
        raise NotImplementedError("InputParsing has no instance!")

    def __initialize_keyword_variables__(self, kwargs: dict) -> None:
        """Check, register and update keyword variables.

        Parameters
        ----------
        kwargs : dict
            Dictionary of keyword arguments to process
        """
        self.update = False
        self.__check_mandatory_keywords__(self.lrk, kwargs)
        self.__register_variable_names__(self.defaults, kwargs)
        self.__update_dict_entries__(self.defaults, kwargs)
        self.update = True

    def __check_mandatory_keywords__(self, lrk: list, kwargs: dict) -> None:
        """Verify that all required keywords are present in kwargs.

        Parameters
        ----------
        lrk : list
            List of required keywords
        kwargs : dict
            Dictionary of provided keyword arguments

        Raises
        ------
        MissingKeywordError
            If a required keyword is missing or None
        """
        for key in lrk:
            if key not in kwargs:
                raise MissingKeywordError(f"'{key}' is a mandatory keyword")
            if kwargs[key] is None:
                raise MissingKeywordError(
                    f"'{key}' is a mandatory keyword and cannot be None"
                )

    def __register_variable_names__(
        self,
        defaults: dict[str, list[tp.Any, tuple]],
        kwargs: dict,
    ) -> None:
        """Register the default values as instance variables.

        Each key is registered as ``key`` and ``_key`` so that derived
        classes can wrap the public name in a property.
        """
        for key, value in defaults.items():
            setattr(self, f"_{key}", value[0])
            setattr(self, key, value[0])

        # save kwargs dict
        self.kwargs: dict = kwargs

    def __update_dict_entries__(
        self,
        defaults: dict[str, list[tp.Any, tuple]],
        kwargs: dict[str, tp.Any],
    ) -> None:
        """Validate the provided keywords and update the instance.

        Raises
        ------
        KeywordError
            If a key in kwargs is not in defaults
        InputError
            If a value is of the wrong type or fails validation
        """
        if not defaults:
            raise ValueError("Defaults dictionary cannot be empty")

        for key, value in kwargs.items():
            self.__process_keyword__(defaults, key, value)

    def __process_keyword__(self, defaults: dict, key: str, value: tp.Any) -> None:
        """Validate a single keyword and store it."""
        if key not in defaults:
            raise KeywordError(f"'{key}' is not a valid keyword")

        if value is None:
            return

        expected_types = defaults[key][1]
        self.__validate_value_type__(key, value, expected_types)

        try:
            self._validate_value(key, value)
        except ValueError as err:
            raise InputError(f"Validation failed for '{key}': {str(err)}") from err

        defaults[key][0] = value
        setattr(self, key, value)
        setattr(self, f"_{key}", value)

    def __validate_value_type__(self, key: str, value: tp.Any, expected_types) -> None:
        """Raise InputError if value is not one of expected_types."""
        if not isinstance(value, expected_types):
            if isinstance(expected_types, tuple):
                expected = ", ".join(t.__name__ for t in expected_types)
            else:
                expected = expected_types.__name__
            raise InputError(
                f"'{value}' for '{key}' must be of type {expected}, "
                f"not {type(value).__name__}"
            )

    def _validate_value(self, key: str, value: tp.Any) -> None:
        """Range checks shared by all carbonbox objects.

        Raises
        ------
        ValueError
            If the value fails validation
        """
        if isinstance(value, str):
            if key == "name" and (not value or value.isspace()):
                raise ValueError("Name cannot be empty or just whitespace")

        elif isinstance(value, bool):
            pass

        elif isinstance(value, int | float):
            if key in ("eps_abs", "eps_rel", "dt") and value <= 0:
                raise ValueError(f"'{key}' must be positive, got {value}")
            if key == "max_retries" and value < 0:
                raise ValueError(f"'{key}' cannot be negative, got {value}")


class carbonboxBase(InputParsing):
    """The carbonbox base class template.

    This class handles keyword arguments, name registration and
    other common tasks.

    Examples
    --------
    .. code-block:: python

            # Define required keywords in lrk list
            self.lrk: list = ["name"]

            # Define allowed type per keyword in defaults dict
            self.defaults: dict[str, list[any, tuple]] = {
                "name": ["None", (str)],
                "eps_abs": [1e-6, (int, float)],
            }

            # Parse and register all keywords with the instance
            self.__initialize_keyword_variables__(kwargs)

            # Register the instance
            self.__register_name__()
    """

    def __init__(self) -> None:
        raise NotImplementedError

    def __register_name__(self) -> None:
        """Set the full name used in log messages.

        carbonbox objects do not register with a global parent. Models are
        owned by the solver that integrates them.
        """
        self.full_name = self.name

    def __repr__(self) -> str:
        """Return the class name and the keywords this object was created with."""
        args = []
        for k, v in self.kwargs.items():
            if isinstance(v, carbonboxBase):
                v = v.name
            elif isinstance(v, list):
                v = [getattr(e, "name", e) for e in v]
            args.append(f"{k}={v!r}")
        return f"{self.__class__.__name__}({', '.join(args)})"

    def ensure_q(self, arg):
        """Ensure that a given input argument is a quantity object.

        Parameters
        ----------
        arg : str or Quantity
            The argument to convert, e.g., "0.001 PgC"

        Returns
        -------
        Quantity

        Raises
        ------
        InputError
            If the argument is empty, unitless, or cannot be parsed

        Examples
        --------
        >>> self.ensure_q("0.001 PgC")
        <Quantity(0.001, 'PgC')>
        """
        if arg is None:
            raise InputError("Cannot convert None to a Quantity")

        if isinstance(arg, Q_):
            return arg
        elif isinstance(arg, str):
            if not arg.strip():
                raise InputError("Cannot convert empty string to a Quantity")
            try:
                return Q_(arg)
            except Exception as err:
                raise InputError(
                    f"Failed to convert '{arg}' to a Quantity: {str(err)}"
                ) from err
        elif isinstance(arg, int | float):
            raise InputError(
                f"Numeric value {arg} provided without units. "
                f"Please provide a string with units, e.g., '{arg} PgC'"
            )
        else:
            raise InputError(
                f"Cannot convert type {type(arg)} to a Quantity. "
                f"Must be a string or Quantity."
            )
