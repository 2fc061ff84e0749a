"""mobile-forge -- scaffold and run cross-platform mobile app projects.

Renders template packs into project trees, generates the Xcode (XcodeGen)
and Gradle project descriptors, and drives build -> install -> launch ->
log-follow sessions on Apple and Android devices.

Quick usage::

    from mobile_forge.pipeline import Pipeline

    pipeline = Pipeline()
    await pipeline.init("Foo", "com.example.foo", destination="./foo")
    await pipeline.run(Platform.ANDROID, "./foo")
"""

__version__ = "0.1.0"
