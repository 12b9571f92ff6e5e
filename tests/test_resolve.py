import pytest

import nodeploy


@pytest.fixture
def installed(packages_dir, make_record):
	"""myapp 1.2.3 (twice), 1.2.10 and 2.0.0, plus other 1.0.0."""
	return {
		"old": make_record("myapp", "1.2.3", "2026-01-01T00:00:00.000000+00:00"),
		"dup": make_record("myapp", "1.2.3", "2026-01-02T00:00:00.000000+00:00"),
		"patch": make_record("myapp", "1.2.10", "2026-01-03T00:00:00.000000+00:00"),
		"major": make_record("myapp", "2.0.0", "2026-01-04T00:00:00.000000+00:00"),
		"other": make_record("other", "1.0.0", "2026-01-05T00:00:00.000000+00:00"),
	}


def _use(packages_dir, record):
	nodeploy.nodeploy_store_set_current(packages_dir, record.directory_name)


@pytest.mark.parametrize("target", [None, "", "@current"])
def test_resolve_current_indicator(packages_dir, installed, target):
	_use(packages_dir, installed["patch"])
	assert nodeploy.nodeploy_resolve(target, packages_dir) == installed["patch"].directory_name


def test_resolve_current_indicator_without_current(packages_dir, installed):
	with pytest.raises(nodeploy.NotFound):
		nodeploy.nodeploy_resolve("@current", packages_dir)


def test_resolve_exact_directory_name(packages_dir, installed):
	target = installed["old"].directory_name
	assert nodeploy.nodeploy_resolve(target, packages_dir) == target


def test_resolve_name_prefers_current(packages_dir, installed):
	_use(packages_dir, installed["old"])
	assert nodeploy.nodeploy_resolve("myapp", packages_dir) == installed["old"].directory_name


def test_resolve_name_without_current_picks_latest(packages_dir, installed):
	_use(packages_dir, installed["other"])
	assert nodeploy.nodeploy_resolve("myapp", packages_dir) == installed["major"].directory_name


def test_resolve_name_version_is_exact_regardless_of_current(packages_dir, installed):
	_use(packages_dir, installed["major"])
	assert nodeploy.nodeploy_resolve("myapp@1.2.10", packages_dir) == installed["patch"].directory_name


def test_resolve_name_version_duplicates_prefer_current_then_latest(packages_dir, installed):
	assert nodeploy.nodeploy_resolve("myapp@1.2.3", packages_dir) == installed["dup"].directory_name
	_use(packages_dir, installed["old"])
	assert nodeploy.nodeploy_resolve("myapp@1.2.3", packages_dir) == installed["old"].directory_name


def test_resolve_unique_version_prefix(packages_dir, installed):
	assert nodeploy.nodeploy_resolve("myapp@2", packages_dir) == installed["major"].directory_name


def test_resolve_ambiguous_version_prefix(packages_dir, installed):
	with pytest.raises(nodeploy.Ambiguous) as exc:
		nodeploy.nodeploy_resolve("myapp@1.2", packages_dir)
	assert installed["patch"].directory_name in exc.value.candidates
	assert installed["old"].directory_name in exc.value.candidates


def test_resolve_unique_directory_prefix(packages_dir, installed):
	target = installed["other"].directory_name[:8]
	assert nodeploy.nodeploy_resolve(target, packages_dir) == installed["other"].directory_name


def test_resolve_ambiguous_directory_prefix(packages_dir, installed):
	with pytest.raises(nodeploy.Ambiguous) as exc:
		nodeploy.nodeploy_resolve("my", packages_dir)
	assert len(exc.value.candidates) == 4


def test_resolve_not_found(packages_dir, installed):
	with pytest.raises(nodeploy.NotFound):
		nodeploy.nodeploy_resolve("ghost", packages_dir)
	with pytest.raises(nodeploy.NotFound):
		nodeploy.nodeploy_resolve("myapp@3.0.0", packages_dir)


def test_resolve_scoped_package_name(packages_dir, make_record):
	record = make_record("@acme/api", "1.0.0", "2026-01-01T00:00:00.000000+00:00")
	assert nodeploy.nodeploy_resolve("@acme/api", packages_dir) == record.directory_name
	assert nodeploy.nodeploy_resolve("@acme/api@1.0.0", packages_dir) == record.directory_name


def test_resolve_version_prefix_matches_whole_components(packages_dir, make_record):
	patch = make_record("myapp", "1.2.10", "2026-01-03T00:00:00.000000+00:00")
	make_record("myapp", "2.0.0", "2026-01-04T00:00:00.000000+00:00")

	assert nodeploy.nodeploy_resolve("myapp@1.2", packages_dir) == patch.directory_name
	with pytest.raises(nodeploy.NotFound):
		nodeploy.nodeploy_resolve("myapp@1.2.1", packages_dir)


def test_resolve_major_prefix_does_not_match_longer_major(packages_dir, make_record):
	make_record("myapp", "10.0.0", "2026-01-01T00:00:00.000000+00:00")
	with pytest.raises(nodeploy.NotFound):
		nodeploy.nodeploy_resolve("myapp@1", packages_dir)


def test_resolve_directory_prefix_past_timestamp_separator(packages_dir, make_record):
	record = make_record("myapp", "1.2.10", "2026-01-03T00:00:00.000000+00:00")
	make_record("myapp", "1.2.10", "2026-02-03T00:00:00.000000+00:00")
	assert nodeploy.nodeploy_resolve("myapp@1.2.10_202601", packages_dir) == record.directory_name
	with pytest.raises(nodeploy.NotFound):
		nodeploy.nodeploy_resolve("myapp@1.2.1_2026", packages_dir)


def test_uninstall_of_missing_version_removes_nothing(packages_dir, make_record):
	patch = make_record("myapp", "1.2.10", "2026-01-03T00:00:00.000000+00:00")
	make_record("myapp", "2.0.0", "2026-01-04T00:00:00.000000+00:00")

	with pytest.raises(nodeploy.NotFound):
		nodeploy.nodeploy_engine_uninstall(packages_dir, "myapp@1.2.1", config=nodeploy.Config())

	assert nodeploy.nodeploy_store_get(packages_dir, patch.directory_name) == patch
