import pytest

from cgroupkit.errors import CgroupError, InvalidFormatError, InvalidGroupPathError


def test_invalid_format_default_message():
    assert str(InvalidFormatError()) == "cgroups: parsing file with invalid format failed"


def test_invalid_group_path_default_message():
    assert str(InvalidGroupPathError()) == "cgroups: invalid group path"


def test_custom_message_is_kept():
    err = InvalidFormatError("bad line in memory.stat")
    assert str(err) == "bad line in memory.stat"


@pytest.mark.parametrize("cls", [InvalidFormatError, InvalidGroupPathError])
def test_errors_are_caught_as_base_class(cls):
    err = cls("detail")
    with pytest.raises(CgroupError) as info:
        raise err
    assert info.value is err
    assert str(info.value) == "detail"


@pytest.mark.parametrize("cls", [InvalidFormatError, InvalidGroupPathError])
def test_errors_are_value_errors(cls):
    err = cls("other detail")
    assert isinstance(err, ValueError)
    assert str(err) == "other detail"
    assert err.args == ("other detail",)


def test_distinct_error_kinds():
    assert issubclass(InvalidGroupPathError, CgroupError)
    assert issubclass(InvalidFormatError, CgroupError)
    assert not issubclass(InvalidGroupPathError, InvalidFormatError)
    assert not issubclass(InvalidFormatError, InvalidGroupPathError)
    assert str(InvalidGroupPathError()) != str(InvalidFormatError())