from rest_framework import serializers
from django.contrib.auth import get_user_model
from django.contrib.auth.password_validation import validate_password

User = get_user_model()

class UserRegistrationSerializer(serializers.ModelSerializer):
    password = serializers.CharField(write_only=True, validators=[validate_password])
    password_confirm = serializers.CharField(write_only=True)

    class Meta:
        model = User
        fields = ('email', 'phone', 'username', 'first_name', 'last_name',
                  'password', 'password_confirm', 'role')
        extra_kwargs = {
            'email': {'required': True},
            'username': {'required': True}
        }

    def validate(self, attrs):
        if attrs['password'] != attrs['password_confirm']:
            raise serializers.ValidationError({"password": "Password fields don't match."})

        if attrs.get('role') not in [User.CLIENT, User.FREELANCER]:
            raise serializers.ValidationError({"role": "Role must be either 'client' or 'freelancer'"})

        return attrs

    def create(self, validated_data):
        validated_data.pop('password_confirm')
        return User.objects.create_user(**validated_data)

class UserSerializer(serializers.ModelSerializer):
    display_name = serializers.CharField(read_only=True)

    class Meta:
        model = User
        fields = ('id', 'username', 'email', 'phone', 'first_name', 'last_name',
                 'display_name', 'role', 'rating', 'total_reviews', 'created_at')
        read_only_fields = ('id', 'role', 'rating', 'total_reviews', 'created_at')

class PublicUserSerializer(serializers.ModelSerializer):
    display_name = serializers.CharField(read_only=True)

    class Meta:
        model = User
        fields = ('id', 'username', 'display_name', 'role', 'rating', 'total_reviews')
